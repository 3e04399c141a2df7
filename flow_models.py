"""
Flow definition models.

Defines the portable structure of a flow: metadata, config, input/output
mappers and an ordered list of typed steps. Field names are camelCase on
the wire and snake_case in Python; both are accepted when loading.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

STEP_TYPES = ("auth", "navigation", "form-fill", "extraction", "custom")


class FlowModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


# --- Selectors ---


class SelectorDef(FlowModel):
    strategy: str = "css"  # css, xpath, text, label, placeholder, testId, role
    value: str
    description: Optional[str] = None


class SelectorFallback(FlowModel):
    primary: Union[str, SelectorDef]
    fallbacks: Optional[list[Union[str, SelectorDef]]] = None
    timeout: Optional[int] = None


Selector = Union[str, SelectorDef, SelectorFallback]


def selector_value(selector: Any) -> Optional[str]:
    """
    Return the effective selector string.

    Strategy and fallback metadata are dropped: a fallback chain resolves to
    its primary selector, a {strategy, value} pair to its value.
    """
    if selector is None:
        return None
    if isinstance(selector, str):
        return selector
    if isinstance(selector, SelectorFallback):
        return selector_value(selector.primary)
    if isinstance(selector, SelectorDef):
        return selector.value
    if isinstance(selector, dict):
        if "primary" in selector:
            return selector_value(selector["primary"])
        value = selector.get("value")
        return value if isinstance(value, str) else None
    return None


# --- Data transformation ---


class TransformConfig(FlowModel):
    name: str
    args: Optional[dict[str, Any]] = None


class ValidationRule(FlowModel):
    type: str  # required, minLength, maxLength, pattern, email, phone, date, range, enum, custom
    value: Any = None
    message: Optional[str] = None
    optional: Optional[bool] = None


class Mapping(FlowModel):
    source: str = Field(alias="from")
    to: str
    transform: Optional[list[TransformConfig]] = None
    default_value: Any = Field(default=None, alias="default")


class Mapper(FlowModel):
    name: str = ""
    mappings: list[Mapping] = Field(default_factory=list)
    strict: Optional[bool] = None


# --- Actions and fields ---


class ActionDefinition(FlowModel):
    type: str = Field(validation_alias=AliasChoices("type", "action"))
    selector: Optional[Selector] = None
    value: Any = None
    url: Optional[str] = None
    timeout: Optional[int] = None
    wait_before: Optional[int] = None
    wait_after: Optional[int] = None
    wait_until: Optional[str] = None
    state: Optional[str] = None
    force: Optional[bool] = None
    key: Optional[str] = None
    path: Optional[str] = None
    full_page: Optional[bool] = None
    script: Optional[str] = None
    into: Optional[str] = None
    attribute: Optional[str] = None
    checked: Optional[bool] = None
    optional: Optional[bool] = None
    description: Optional[str] = None


class FieldDefinition(FlowModel):
    id: str = ""
    type: str = ""  # text, email, password, number, date, select, checkbox, radio, file, hidden
    selector: Optional[Selector] = None
    source: str = ""  # ${input.x}, input.x, vars.x, env.X or a literal
    transform: Optional[list[TransformConfig]] = None
    validation: Optional[list[ValidationRule]] = None
    optional: Optional[bool] = None
    wait_for: Optional[bool] = None
    label: Optional[str] = None


class Extraction(FlowModel):
    selector: Selector
    attribute: Optional[str] = None
    into: str = ""
    transform: Optional[list[TransformConfig]] = None


class AuthCredentials(FlowModel):
    username: FieldDefinition
    password: FieldDefinition


# --- Steps ---


class RetryPolicy(FlowModel):
    max_attempts: int = Field(
        default=1,
        ge=1,
        validation_alias=AliasChoices("maxAttempts", "attempts", "max_attempts"),
    )
    delay_ms: int = Field(default=1000, ge=0)
    backoff: Literal["exponential", "fixed"] = "exponential"
    max_delay_ms: Optional[int] = None

    def delay_for(self, attempt: int) -> int:
        """Delay in ms after failed attempt number `attempt` (1-based)."""
        if self.backoff == "fixed":
            delay = self.delay_ms
        else:
            delay = self.delay_ms * 2 ** (attempt - 1)
        if self.max_delay_ms:
            delay = min(delay, self.max_delay_ms)
        return delay


class BaseStep(FlowModel):
    id: str = ""
    name: str = ""
    description: Optional[str] = None
    condition: Optional[str] = None
    optional: Optional[bool] = None
    timeout: Optional[int] = None  # ms
    retry: Optional[RetryPolicy] = None

    @field_validator("condition", mode="before")
    @classmethod
    def _normalize_condition(cls, value: Any) -> Any:
        # {expression, type: if|unless|when} objects collapse to a plain expression
        if isinstance(value, dict):
            expression = str(value.get("expression", "")).strip()
            if value.get("type") == "unless" and expression:
                return f"not ({expression})"
            return expression or None
        return value


class AuthStep(BaseStep):
    type: Literal["auth"] = "auth"
    credentials: AuthCredentials
    submit_selector: Selector
    success_indicator: Selector


class NavigationStep(BaseStep):
    type: Literal["navigation"] = "navigation"
    actions: list[ActionDefinition] = Field(default_factory=list)


class FormFillStep(BaseStep):
    type: Literal["form-fill"] = "form-fill"
    fields: list[FieldDefinition] = Field(default_factory=list)
    submit_selector: Optional[Selector] = None
    before_fill: Optional[list[ActionDefinition]] = None
    after_fill: Optional[list[ActionDefinition]] = None


class ExtractionStep(BaseStep):
    type: Literal["extraction"] = "extraction"
    extractions: list[Extraction] = Field(default_factory=list)


class CustomStep(BaseStep):
    type: Literal["custom"] = "custom"
    handler: Optional[str] = None  # step registry key; the step id when omitted
    actions: list[ActionDefinition] = Field(default_factory=list)

    @property
    def registry_key(self) -> str:
        return self.handler or self.id


StepDefinition = Annotated[
    Union[AuthStep, NavigationStep, FormFillStep, ExtractionStep, CustomStep],
    Field(discriminator="type"),
]


# --- Flow ---


class FlowMetadata(FlowModel):
    model_config = ConfigDict(extra="allow")

    name: str = ""
    version: str = ""
    description: Optional[str] = None
    author: Optional[str] = None
    tags: Optional[list[str]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _date_to_text(cls, value: Any) -> Any:
        # unquoted YAML dates load as date/datetime objects
        if isinstance(value, (date, datetime)):
            return value.isoformat()
        return value

    @field_validator("version", mode="before")
    @classmethod
    def _number_to_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class BrowserConfig(FlowModel):
    headless: Optional[bool] = None
    viewport_width: Optional[int] = None
    viewport_height: Optional[int] = None
    user_agent: Optional[str] = None
    timeout: Optional[int] = None
    slow_mo: Optional[int] = None


class FlowConfig(FlowModel):
    base_url: Optional[str] = None
    browser: Optional[BrowserConfig] = None
    default_timeout: Optional[int] = None
    max_retries: Optional[int] = None
    retry_delay: Optional[int] = None
    stop_on_error: Optional[bool] = None
    screenshot_on_error: Optional[bool] = None
    screenshots_dir: Optional[str] = None
    debug: Optional[bool] = None


class FlowDefinition(FlowModel):
    metadata: FlowMetadata = Field(default_factory=FlowMetadata)
    config: Optional[FlowConfig] = None
    input_mapper: Optional[Mapper] = None
    output_mapper: Optional[Mapper] = None
    steps: list[StepDefinition] = Field(default_factory=list)

    @property
    def flow_key(self) -> str:
        return self.metadata.name

    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]

    def step_index(self, step_id: str) -> Optional[int]:
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return None
