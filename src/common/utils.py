import typing as t

from django.db import models, transaction
from django.db.models import Max
from pydantic import BaseModel

T = t.TypeVar("T", bound=models.Model)


def next_order(queryset: models.QuerySet[t.Any], field: str = "order") -> int:
    """Return max(field) + 1 over the queryset, or 1 when it is empty."""
    current = queryset.aggregate(current=Max(field))["current"]
    return (current or 0) + 1


@transaction.atomic
def update_db_instance(
    instance: T,
    payload: BaseModel | None = None,
    *,
    exclude_unset: bool = True,
    exclude_defaults: bool = False,
    **kwargs: t.Any,
) -> T:
    """Updates a DB instance given a Pydantic payload, safely within a select_for_update lock."""
    instance = instance.__class__.objects.select_for_update().get(pk=instance.pk)  # type: ignore[attr-defined]
    data = payload.model_dump(exclude_unset=exclude_unset, exclude_defaults=exclude_defaults) if payload else {}
    data.update(**kwargs)
    for key, value in data.items():
        setattr(instance, key, value)
    instance.save()
    return instance
