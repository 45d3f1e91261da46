from django.dispatch import Signal

# Sent after a session transition has been committed to the database row.
# Expected kwargs:
#   - session: ResponseSession instance (already in the target state)
#   - event: SessionEvent value that was fired
#   - source: state before the transition
#   - target: state after the transition
session_transitioned = Signal()
