# apps/common/pydantic_compat.py
"""
Shared pydantic v2 helpers.

- BaseSettings with the CAMPMETER_ env prefix
- model_to_dict with API-friendly defaults
- DecimalStr: Decimal that serializes to a plain string in JSON
"""
from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Any, Type, TypeVar

from pydantic import BaseModel, PlainSerializer, ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings as _BaseSettings, SettingsConfigDict

from .errors import ValidationError


class BaseSettings(_BaseSettings):
    """BaseSettings with default config."""
    model_config = SettingsConfigDict(
        env_prefix='CAMPMETER_',
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=False,
    )


def model_to_dict(m: BaseModel, by_alias: bool = True, exclude_none: bool = False, **kwargs) -> dict:
    """model_dump in JSON mode so Decimals and datetimes are wire-safe."""
    return m.model_dump(mode="json", by_alias=by_alias, exclude_none=exclude_none, **kwargs)


# Decimal -> string (no float precision loss on the wire)
DecimalStr = Annotated[
    Decimal,
    PlainSerializer(lambda d: format(d, 'f'), return_type=str, when_used='json')
]


M = TypeVar('M', bound=BaseModel)


def parse_model(cls: Type[M], data: Any) -> M:
    """Validate ``data`` into ``cls``; pydantic errors become ValidationError."""
    if isinstance(data, cls):
        return data
    try:
        return cls.model_validate(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()))
        msg = first.get("msg", str(exc))
        raise ValidationError(f"{loc}: {msg}" if loc else msg) from exc


__all__ = ['BaseSettings', 'model_to_dict', 'DecimalStr', 'parse_model']
