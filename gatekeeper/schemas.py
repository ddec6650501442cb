"""
Pydantic schemas for request validation.
"""

from typing import Any, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from core.errors import ValidationError
from core.skypilot import DEFAULT_CPUS, DEFAULT_DISK_SIZE, DEFAULT_MEMORY, LaunchOptions

ModelT = TypeVar("ModelT", bound=BaseModel)


class LaunchRequest(BaseModel):
    """Optional resource overrides for POST /cluster/launch."""

    model_config = ConfigDict(extra="forbid")

    cloud: Optional[str] = Field(default=None, max_length=32)
    region: Optional[str] = Field(default=None, max_length=64)
    instance_type: Optional[str] = Field(default=None, max_length=64)
    cpus: Union[int, str] = DEFAULT_CPUS
    memory: Union[int, str] = DEFAULT_MEMORY
    disk_size: int = Field(default=DEFAULT_DISK_SIZE, ge=1)
    use_spot: bool = False

    @field_validator("cloud", "region", "instance_type")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    def to_options(self) -> LaunchOptions:
        return LaunchOptions(**self.model_dump())


def _field_errors(exc: PydanticValidationError) -> Dict[str, List[str]]:
    errors: Dict[str, List[str]] = {}
    for err in exc.errors():
        field = ".".join(str(part) for part in err["loc"]) or "body"
        errors.setdefault(field, []).append(err["msg"])
    return errors


class SchemaValidationError(ValidationError):
    """Request body failed schema validation; carries one entry per field."""

    def __init__(self, errors: Dict[str, List[str]]):
        first_field = next(iter(errors), "body")
        super().__init__(errors[first_field][0] if errors else "invalid body", field=first_field)
        self.errors = errors

    def to_errors(self) -> dict:
        return self.errors


def validate_body(model: Type[ModelT], data: Any) -> ModelT:
    """Validate ``data`` against ``model``; raises SchemaValidationError (400)."""
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object", field="body")
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise SchemaValidationError(_field_errors(e)) from e
