"""Schema validation of per-type node configuration."""

from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..models.core import NodeType, ValidationResult
from .conditions import normalize_operator
from .exceptions import ValidationError
from .logging import get_logger

logger = get_logger(__name__)

MAX_DELAY_MS = 604_800_000  # 7 days


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Return a tzinfo for an IANA name, UTC when empty.

    Raises:
        ValueError: If the zone is unknown
    """
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {name}")


class _ConfigModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", str_strip_whitespace=True)


class FilterCondition(_ConfigModel):
    field: Optional[str] = None
    path: Optional[str] = None
    operator: str = "equals"
    value: Any = None
    value_to: Any = Field(None, alias="valueTo")
    negate: bool = False

    @field_validator('value', 'value_to', mode='before')
    @classmethod
    def strip_value(cls, v):
        return v.strip() if isinstance(v, str) else v

    @model_validator(mode='after')
    def validate_condition(self):
        if not self.field and not self.path:
            raise ValueError("Condition requires a field")
        self.operator = normalize_operator(self.operator)
        if self.operator == "between" and (self.value is None or self.value_to is None):
            raise ValueError("Operator 'between' requires value and valueTo")
        if self.operator in ("in", "not_in") and not isinstance(self.value, list):
            if not (isinstance(self.value, str) and self.value.strip().startswith("{{")):
                raise ValueError(f"Operator '{self.operator}' requires a list value")
        return self

    def as_leaf(self) -> Dict[str, Any]:
        return {
            "field": self.field or self.path,
            "operator": self.operator,
            "value": self.value,
            "valueTo": self.value_to,
            "negate": self.negate,
        }


def _conditions_from_mapping(value: Any) -> Any:
    # {"status": "active"} shorthand becomes equality leaves
    if isinstance(value, dict):
        return [{"field": k, "operator": "equals", "value": v} for k, v in value.items()]
    return value


def _upper_logical(value: Any) -> Any:
    return value.strip().upper() if isinstance(value, str) else value


class OrderBy(_ConfigModel):
    field: str = Field(..., min_length=1)
    direction: Literal["asc", "desc"] = "asc"

    @field_validator('direction', mode='before')
    @classmethod
    def lower_direction(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class QueryConfig(_ConfigModel):
    model: str = Field(..., min_length=1)
    filters: List[FilterCondition] = Field(default_factory=list)
    order_by: List[OrderBy] = Field(default_factory=list, alias="orderBy")
    limit: int = Field(100, ge=1, le=1000)
    offset: int = Field(0, ge=0)
    select: Optional[List[str]] = None
    include: Optional[List[str]] = None
    result_key: Optional[str] = Field(None, alias="resultKey")
    fallback_key: Optional[str] = Field(None, alias="fallbackKey")

    @field_validator('filters', mode='before')
    @classmethod
    def expand_filter_mapping(cls, v):
        return _conditions_from_mapping(v) or []

    @field_validator('order_by', mode='before')
    @classmethod
    def wrap_single_order(cls, v):
        if v is None:
            return []
        if isinstance(v, dict):
            return [v]
        return v


class LoopConfig(_ConfigModel):
    data_source: Optional[str] = Field(None, alias="dataSource")
    source_key: Optional[str] = Field(None, alias="sourceKey")
    item_variable: str = Field("item", alias="itemVariable", min_length=1)
    index_variable: str = Field("index", alias="indexVariable", min_length=1)
    max_iterations: int = Field(100, alias="maxIterations", ge=1, le=10_000)
    result_key: Optional[str] = Field(None, alias="resultKey")
    empty_path_handle: Optional[str] = Field(None, alias="emptyPathHandle")
    loop_body_node_id: Optional[str] = Field(None, alias="loopBodyNodeId")
    break_condition: Optional[Any] = Field(None, alias="breakCondition")
    failure_policy: Literal["fail_fast", "continue"] = Field("fail_fast", alias="failurePolicy")
    concurrency: int = Field(1, ge=1, le=16)

    @model_validator(mode='after')
    def validate_source(self):
        if not self.data_source and not self.source_key:
            raise ValueError("LOOP requires dataSource or sourceKey")
        return self


class FilterConfig(_ConfigModel):
    source_key: str = Field(..., alias="sourceKey", min_length=1)
    conditions: List[FilterCondition] = Field(default_factory=list)
    logical_operator: Literal["AND", "OR"] = Field("AND", alias="logicalOperator")
    result_key: Optional[str] = Field(None, alias="resultKey")
    fallback_key: Optional[str] = Field(None, alias="fallbackKey")

    @field_validator('conditions', mode='before')
    @classmethod
    def expand_condition_mapping(cls, v):
        return _conditions_from_mapping(v) or []

    @field_validator('logical_operator', mode='before')
    @classmethod
    def normalize_logical(cls, v):
        return _upper_logical(v) or "AND"


class ConditionConfig(_ConfigModel):
    conditions: List[FilterCondition] = Field(default_factory=list)
    logical_operator: Literal["AND", "OR"] = Field("AND", alias="logicalOperator")
    result_key: Optional[str] = Field(None, alias="resultKey")
    true_branch: Optional[List[str]] = Field(None, alias="trueBranch")
    false_branch: Optional[List[str]] = Field(None, alias="falseBranch")

    @field_validator('conditions', mode='before')
    @classmethod
    def expand_condition_mapping(cls, v):
        return _conditions_from_mapping(v) or []

    @field_validator('logical_operator', mode='before')
    @classmethod
    def normalize_logical(cls, v):
        return _upper_logical(v) or "AND"

    @field_validator('true_branch', 'false_branch', mode='before')
    @classmethod
    def wrap_single_branch(cls, v):
        if isinstance(v, str):
            return [v]
        return v


class DelayConfig(_ConfigModel):
    delay_ms: int = Field(1000, alias="delayMs", ge=0, le=MAX_DELAY_MS)
    result_key: Optional[str] = Field(None, alias="resultKey")


class ScheduleFrequency(str, Enum):
    EVERY_MINUTE = "EVERY_MINUTE"
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class ScheduleConfig(_ConfigModel):
    cron: Optional[str] = None
    frequency: Optional[ScheduleFrequency] = None
    timezone: str = "UTC"
    start_at: Optional[datetime] = Field(None, alias="startAt")
    end_at: Optional[datetime] = Field(None, alias="endAt")
    is_active: bool = Field(True, alias="isActive")
    result_key: Optional[str] = Field(None, alias="resultKey")
    metadata: Optional[Dict[str, Any]] = None

    @field_validator('frequency', mode='before')
    @classmethod
    def upper_frequency(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator('cron')
    @classmethod
    def validate_cron(cls, v):
        if v is not None and not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression: {v}")
        return v

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v):
        resolve_timezone(v)
        return v or "UTC"

    @model_validator(mode='after')
    def validate_schedule(self):
        if bool(self.cron) == bool(self.frequency):
            raise ValueError("SCHEDULE requires exactly one of cron or frequency")
        if self.start_at and self.end_at and _as_aware(self.start_at) >= _as_aware(self.end_at):
            raise ValueError("startAt must be before endAt")
        return self


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


CONFIG_MODELS = {
    NodeType.QUERY: QueryConfig,
    NodeType.LOOP: LoopConfig,
    NodeType.FILTER: FilterConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.DELAY: DelayConfig,
    NodeType.SCHEDULE: ScheduleConfig,
}

NodeConfig = Union[QueryConfig, LoopConfig, FilterConfig, ConditionConfig, DelayConfig, ScheduleConfig]


def _format_errors(error: PydanticValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()) if part != "__root__")
        message = item.get("msg", "invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        messages.append(f"{location}: {message}" if location else message)
    return messages


def validate_node_config(node_type: Union[NodeType, str], config: Optional[Dict[str, Any]]) -> ValidationResult:
    """Validate a node's config against the schema for its type.

    Types without a schema (TRIGGER, ACTION) always pass.
    """
    node_type = NodeType(node_type)
    model = CONFIG_MODELS.get(node_type)
    if model is None:
        return ValidationResult(is_valid=True)
    if config is not None and not isinstance(config, dict):
        return ValidationResult(is_valid=False, errors=["config must be an object"])
    try:
        model.model_validate(config or {})
    except PydanticValidationError as e:
        return ValidationResult(is_valid=False, errors=_format_errors(e))
    return ValidationResult(is_valid=True)


def parse_node_config(node_type: Union[NodeType, str], config: Optional[Dict[str, Any]]) -> Union[NodeConfig, Dict[str, Any]]:
    """Parse a node's config into its typed model.

    Returns the raw dict for types without a schema.

    Raises:
        ValidationError: If the config does not match the schema
    """
    node_type = NodeType(node_type)
    model = CONFIG_MODELS.get(node_type)
    if model is None:
        return dict(config or {})
    try:
        return model.model_validate(config or {})
    except PydanticValidationError as e:
        errors = _format_errors(e)
        raise ValidationError(
            f"Invalid {node_type.value} config: {'; '.join(errors)}",
            validation_errors=errors,
            field="config"
        )


def normalize_node_config(node_type: Union[NodeType, str], config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Parse and re-serialize a config so stored values are trimmed and defaulted.

    Raises:
        ValidationError: If the config does not match the schema
    """
    parsed = parse_node_config(node_type, config)
    if isinstance(parsed, dict):
        return parsed
    return parsed.model_dump(mode="json", by_alias=True, exclude_none=True)
