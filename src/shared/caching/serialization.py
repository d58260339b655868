"""
Serialization contract for the distributed cache tier.

Values cross the network as bytes. JSON is the default wire format; pickle
is available for trusted, single-codebase deployments.
"""

import dataclasses
import json
import pickle
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from .exceptions import SerializationError


def _json_default(value: Any) -> Any:
    """Encode the non-JSON types that entity payloads commonly carry."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class CacheSerializer:
    """Encodes values to bytes and decodes them back.

    Decoding failures raise `SerializationError`; the distributed tier turns
    that into a cache miss.
    """

    SUPPORTED_FORMATS = ("json", "pickle")

    def __init__(self, format: str = "json"):
        if format not in self.SUPPORTED_FORMATS:
            raise ValueError(f"Unsupported serialization format: {format}")
        self.format = format

    def dumps(self, value: Any) -> bytes:
        try:
            if self.format == "json":
                return json.dumps(value, default=_json_default, separators=(",", ":")).encode("utf-8")
            return pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
        except (TypeError, ValueError, pickle.PicklingError, AttributeError) as e:
            raise SerializationError(
                f"Failed to serialize value of type {type(value).__name__}", original_error=e
            )

    def loads(self, data: bytes) -> Any:
        try:
            if self.format == "json":
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                return json.loads(data)
            return pickle.loads(data)
        except (UnicodeDecodeError, ValueError, TypeError, pickle.UnpicklingError, EOFError,
                AttributeError, ImportError, IndexError) as e:
            raise SerializationError("Failed to deserialize cached payload", original_error=e)
