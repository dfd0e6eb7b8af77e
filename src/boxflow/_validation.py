import enum
import typing

import attrs

from boxflow.errors import ValidationError

__all__ = ["checked", "enum_converter"]

E = typing.TypeVar("E", bound=enum.Enum)


def checked(*validators: typing.Any) -> typing.Callable[..., None]:
    """
    Combine attrs validators, reporting their failures as `ValidationError`.

    :param validators: attrs validators, applied in order.
    :return: A single attrs validator.
    """
    combined = attrs.validators.and_(*validators)

    def validator(instance: typing.Any, attribute: attrs.Attribute, value: typing.Any) -> None:
        try:
            combined(instance, attribute, value)
        except ValidationError:
            raise
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    return validator


def enum_converter(enum_type: typing.Type[E]) -> typing.Callable[[typing.Any], E]:
    """attrs converter to `enum_type` raising `ValidationError` for unknown values."""

    def converter(value: typing.Any) -> E:
        try:
            return enum_type(value)
        except ValueError as exc:
            raise ValidationError(f"Invalid {enum_type.__name__} value {value!r}") from exc

    return converter
