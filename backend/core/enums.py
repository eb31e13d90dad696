"""Closed string enumerations with reject-on-unknown parsing."""

from enum import Enum

from core.errors import UnknownValueError


class ParseableEnum(str, Enum):
    """String enum whose ``parse`` accepts a member or its name, any case."""

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().upper()
            for member in cls:
                if member.name == key or member.value.upper() == key:
                    return member
        raise UnknownValueError(cls.__name__, value, [m.name for m in cls])

    @classmethod
    def parse_optional(cls, value):
        return None if value is None else cls.parse(value)
