"""
Tests for the cache serialization contract.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

import pytest
from pydantic import BaseModel

from src.shared.caching import CacheSerializer, SerializationError


class Provider(BaseModel):
    id: int
    name: str
    updated_at: datetime


@dataclass
class Claim:
    id: str
    amount: Decimal


class TestCacheSerializer:

    def test_rejects_unknown_format(self):
        with pytest.raises(ValueError):
            CacheSerializer("msgpack")

    def test_json_encodes_models_and_dataclasses(self):
        serializer = CacheSerializer("json")
        provider = Provider(id=1, name="Dr. Smith", updated_at=datetime(2024, 1, 2, 3, 4, 5))
        claim = Claim(id="c-1", amount=Decimal("12.50"))

        decoded = serializer.loads(serializer.dumps({"provider": provider, "claim": claim}))

        assert decoded == {
            "provider": {"id": 1, "name": "Dr. Smith", "updated_at": "2024-01-02T03:04:05"},
            "claim": {"id": "c-1", "amount": "12.50"},
        }

    def test_json_encodes_uuid(self):
        serializer = CacheSerializer()
        value = UUID("12345678-1234-5678-1234-567812345678")
        assert serializer.loads(serializer.dumps(value)) == str(value)

    def test_unsupported_type_raises(self):
        with pytest.raises(SerializationError) as exc_info:
            CacheSerializer().dumps(object())
        assert exc_info.value.error_code == "CACHE_SERIALIZATION_ERROR"
        assert isinstance(exc_info.value.__cause__, TypeError)

    @pytest.mark.parametrize("payload", [b"\xff\xfe", b"{truncated", b""])
    def test_corrupt_json_raises(self, payload):
        with pytest.raises(SerializationError):
            CacheSerializer("json").loads(payload)

    def test_corrupt_pickle_raises(self):
        with pytest.raises(SerializationError):
            CacheSerializer("pickle").loads(b"not a pickle")
