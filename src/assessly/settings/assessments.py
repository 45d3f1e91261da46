"""Domain settings for the assessments app."""

from decimal import Decimal

from decouple import config

ASSESSMENTS_DEFAULT_GRADE = config("ASSESSMENTS_DEFAULT_GRADE", default="F")
ASSESSMENTS_PARTIAL_MATCH_THRESHOLD = config("ASSESSMENTS_PARTIAL_MATCH_THRESHOLD", default="0.7", cast=Decimal)
ASSESSMENTS_STRENGTH_MIN_LENGTH = config("ASSESSMENTS_STRENGTH_MIN_LENGTH", default=8, cast=int)
ASSESSMENTS_MAX_FILE_SIZE = config("ASSESSMENTS_MAX_FILE_SIZE", default=10 * 1024 * 1024, cast=int)
ASSESSMENTS_MARKING_MAX_RETRIES = config("ASSESSMENTS_MARKING_MAX_RETRIES", default=3, cast=int)
