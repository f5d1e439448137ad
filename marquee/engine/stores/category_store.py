"""Persistence for provider categories."""
from __future__ import annotations

from datetime import datetime

from ..models import ProviderCategoryRecord
from ..schemas import CategoryModel
from .base import RecordStore


class CategoryStore(RecordStore[ProviderCategoryRecord, CategoryModel]):
    record_type = ProviderCategoryRecord
    model_type = CategoryModel
    key_fields = ("provider_id", "type", "category_id")

    def _touch(self, record: ProviderCategoryRecord) -> None:
        record.updated_at = datetime.utcnow()
