from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

NODE_TYPES = (
    "INPUT",
    "TRIGGER",
    "PROCESS",
    "AI",
    "CODE",
    "CONDITION",
    "SWITCH",
    "LOOP",
    "HTTP",
    "MERGE",
    "GROUP",
    "OUTPUT",
    "NOTIFICATION",
    "IMAGE",
    "VIDEO",
    "AUDIO",
)

CONDITION_OPERATORS = (
    "equals",
    "notEquals",
    "greaterThan",
    "lessThan",
    "greaterOrEqual",
    "lessOrEqual",
    "contains",
    "notContains",
    "startsWith",
    "endsWith",
    "isEmpty",
    "isNotEmpty",
)

DEFAULT_RETRY_STATUSES = [408, 429, 500, 502, 503, 504]


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )


# -- per-type configuration ------------------------------------------------


class InputField(_CamelModel):
    id: str = ""
    name: str
    value: Any = None
    required: bool = False
    type: str = "text"


class InputConfig(_CamelModel):
    fields: List[InputField] = Field(default_factory=list)


class TriggerConfig(_CamelModel):
    trigger_type: str = "manual"


class KnowledgeItem(_CamelModel):
    name: str = ""
    content: str = ""


class ProcessConfig(_CamelModel):
    ai_config_id: Optional[str] = None
    model: Optional[str] = None
    system_prompt: str = ""
    user_prompt: str = ""
    temperature: float = 0.7
    # -1 means no limit
    max_tokens: int = 2048
    modality: Literal["text", "image-gen", "video-gen", "audio-tts"] = "text"
    knowledge_items: List[KnowledgeItem] = Field(default_factory=list)
    image_size: str = "1024x1024"
    image_count: int = Field(1, ge=1, le=10)
    voice: str = "alloy"
    audio_format: str = "mp3"
    video_duration: int = Field(5, ge=1, le=60)


class CodeConfig(_CamelModel):
    language: Literal["python", "expression"] = "python"
    code: str = ""
    inputs: Dict[str, Any] = Field(default_factory=dict)
    timeout_ms: Optional[int] = None
    max_output_bytes: Optional[int] = None


class Condition(_CamelModel):
    variable: str
    operator: Literal[CONDITION_OPERATORS] = "equals"  # type: ignore[valid-type]
    value: Any = None


class ConditionConfig(_CamelModel):
    conditions: List[Condition] = Field(default_factory=list)
    evaluation_mode: Literal["all", "any"] = "all"
    expression: Optional[str] = None

    @model_validator(mode="after")
    def _require_rule(self) -> "ConditionConfig":
        if not self.conditions and not (self.expression or "").strip():
            raise ValueError("condition node needs conditions or an expression")
        return self


class SwitchCase(_CamelModel):
    id: str
    label: str = ""
    value: Any = None
    is_default: bool = False


class SwitchConfig(_CamelModel):
    switch_variable: str
    cases: List[SwitchCase] = Field(default_factory=list)
    match_type: Literal["exact", "contains", "regex", "range"] = "exact"
    case_sensitive: bool = True
    include_default: bool = True


class ForConfig(_CamelModel):
    array_variable: str
    item_name: str = "item"
    index_name: str = "index"


class WhileConfig(_CamelModel):
    condition: Condition
    max_iterations: Optional[int] = Field(None, ge=1)


class LoopConfig(_CamelModel):
    loop_type: Literal["FOR", "WHILE"] = "FOR"
    for_config: Optional[ForConfig] = None
    while_config: Optional[WhileConfig] = None
    max_iterations: int = Field(1000, ge=1)
    continue_on_error: bool = False
    body_node_ids: List[str] = Field(default_factory=list)

    @field_validator("loop_type", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _require_mode_config(self) -> "LoopConfig":
        if self.loop_type == "FOR" and self.for_config is None:
            raise ValueError("FOR loop needs forConfig")
        if self.loop_type == "WHILE" and self.while_config is None:
            raise ValueError("WHILE loop needs whileConfig")
        return self


class HttpBody(_CamelModel):
    type: Literal["none", "json", "text", "form"] = "none"
    content: Any = None


class HttpAuth(_CamelModel):
    type: Literal["none", "basic", "bearer", "apikey"] = "none"
    username: str = ""
    password: str = ""
    token: str = ""
    api_key_name: str = "X-API-Key"
    api_key_value: str = ""
    api_key_location: Literal["header", "query"] = "header"


class HttpRetry(_CamelModel):
    max_retries: int = Field(3, ge=0, le=10)
    retry_delay_ms: int = Field(1000, ge=0)
    retry_on_status: List[int] = Field(default_factory=lambda: list(DEFAULT_RETRY_STATUSES))


class HttpConfig(_CamelModel):
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"] = "GET"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    query_params: Dict[str, str] = Field(default_factory=dict)
    body: HttpBody = Field(default_factory=HttpBody)
    auth: HttpAuth = Field(default_factory=HttpAuth)
    timeout_ms: Optional[int] = Field(None, ge=100)
    retry: HttpRetry = Field(default_factory=HttpRetry)

    @field_validator("method", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class MergeConfig(_CamelModel):
    inputs: List[str] = Field(default_factory=list)
    mode: Literal["union", "overwrite", "concat"] = "union"
    error_strategy: Literal["fail_fast", "continue", "collect"] = "continue"


class GroupConfig(_CamelModel):
    child_node_ids: List[str] = Field(default_factory=list)


class OutputConfig(_CamelModel):
    format: Literal["json", "text", "markdown", "html", "csv"] = "json"
    template: Optional[str] = None
    prompt: Optional[str] = None
    ai_config_id: Optional[str] = None
    model: Optional[str] = None
    file_name: Optional[str] = None
    write_file: bool = False
    include_nodes: List[str] = Field(default_factory=list)


class NotificationConfig(_CamelModel):
    platform: Literal["feishu", "dingtalk", "wecom", "webhook"] = "webhook"
    webhook_url: str = ""
    message_type: Literal["text", "markdown"] = "text"
    content: str = ""
    title: Optional[str] = None
    at_mobiles: List[str] = Field(default_factory=list)
    at_all: bool = False
    fail_execution: bool = False


class MediaConfig(_CamelModel):
    prompt: str = ""
    ai_config_id: Optional[str] = None
    model: Optional[str] = None
    size: str = "1024x1024"
    count: int = Field(1, ge=1, le=10)
    voice: str = "alloy"
    format: str = "mp3"
    duration: int = Field(5, ge=1, le=60)


# -- nodes -----------------------------------------------------------------


class _NodeBase(_CamelModel):
    id: str = Field(..., min_length=1)
    name: str = ""

    @property
    def kind(self) -> str:
        """Canonical node type (``AI`` is an alias of ``PROCESS``)."""
        return "PROCESS" if self.type == "AI" else self.type

    @property
    def label(self) -> str:
        return self.name or self.id


class InputNode(_NodeBase):
    type: Literal["INPUT"]
    config: InputConfig = Field(default_factory=InputConfig)


class TriggerNode(_NodeBase):
    type: Literal["TRIGGER"]
    config: TriggerConfig = Field(default_factory=TriggerConfig)


class ProcessNode(_NodeBase):
    type: Literal["PROCESS", "AI"]
    config: ProcessConfig = Field(default_factory=ProcessConfig)


class CodeNode(_NodeBase):
    type: Literal["CODE"]
    config: CodeConfig


class ConditionNode(_NodeBase):
    type: Literal["CONDITION"]
    config: ConditionConfig


class SwitchNode(_NodeBase):
    type: Literal["SWITCH"]
    config: SwitchConfig


class LoopNode(_NodeBase):
    type: Literal["LOOP"]
    config: LoopConfig


class HttpNode(_NodeBase):
    type: Literal["HTTP"]
    config: HttpConfig


class MergeNode(_NodeBase):
    type: Literal["MERGE"]
    config: MergeConfig = Field(default_factory=MergeConfig)


class GroupNode(_NodeBase):
    type: Literal["GROUP"]
    config: GroupConfig = Field(default_factory=GroupConfig)


class OutputNode(_NodeBase):
    type: Literal["OUTPUT"]
    config: OutputConfig = Field(default_factory=OutputConfig)


class NotificationNode(_NodeBase):
    type: Literal["NOTIFICATION"]
    config: NotificationConfig = Field(default_factory=NotificationConfig)


class MediaNode(_NodeBase):
    type: Literal["IMAGE", "VIDEO", "AUDIO"]
    config: MediaConfig = Field(default_factory=MediaConfig)


WorkflowNode = Annotated[
    Union[
        InputNode,
        TriggerNode,
        ProcessNode,
        CodeNode,
        ConditionNode,
        SwitchNode,
        LoopNode,
        HttpNode,
        MergeNode,
        GroupNode,
        OutputNode,
        NotificationNode,
        MediaNode,
    ],
    Field(discriminator="type"),
]


class WorkflowEdge(_CamelModel):
    id: Optional[str] = None
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None


class WorkflowSettings(_CamelModel):
    timeout: float = Field(300, gt=0)
    enable_parallel_execution: bool = False
    max_parallel_nodes: Optional[int] = Field(None, ge=1)
    error_strategy: Literal["continue", "fail_fast"] = "continue"
    max_loop_iterations: Optional[int] = Field(None, ge=1)


class WorkflowDocument(_CamelModel):
    version: int = 1
    nodes: List[WorkflowNode]
    edges: List[WorkflowEdge] = Field(default_factory=list)
    global_variables: Dict[str, Any] = Field(default_factory=dict)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
