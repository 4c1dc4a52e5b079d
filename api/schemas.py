from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorBody(BaseModel):
    kind: str
    message: str
    retryable: bool


class ConnectionCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    driver: str = Field(..., min_length=2, max_length=30)
    host: Optional[str] = Field(default=None, max_length=255)
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    database: Optional[str] = Field(default=None, max_length=500)
    username: Optional[str] = Field(default=None, max_length=120)
    credential_ref: Optional[str] = Field(default=None, max_length=500, description="env:VAR_NAME or literal:secret")
    options: Dict[str, Any] = Field(default_factory=dict)


class ConnectionUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    driver: Optional[str] = Field(default=None, min_length=2, max_length=30)
    host: Optional[str] = Field(default=None, max_length=255)
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    database: Optional[str] = Field(default=None, max_length=500)
    username: Optional[str] = Field(default=None, max_length=120)
    credential_ref: Optional[str] = Field(default=None, max_length=500)
    options: Optional[Dict[str, Any]] = None


class ConnectionResponse(BaseModel):
    connection: Dict[str, Any]


class ConnectionListResponse(BaseModel):
    connections: List[Dict[str, Any]]
    count: int


class ExecutionSubmitRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    connection_id: str = Field(..., alias="connectionId", min_length=1)
    sql: str = Field(..., min_length=1)
    mode: Literal["preview", "download"] = "preview"
    limit: Optional[int] = Field(default=None, ge=1)
    timeout_ms: Optional[int] = Field(default=None, alias="timeoutMs", ge=1)


class ExecutionStatusResponse(BaseModel):
    id: str
    connection_id: str
    mode: str
    state: str
    duration_ms: Optional[float] = None
    error: Optional[ErrorBody] = None
    cancel_reason: Optional[str] = None
    row_count: Optional[int] = None
    rows_delivered: Optional[int] = None
    chunks_delivered: Optional[int] = None
    truncated: Optional[bool] = None


class ExecutionResultResponse(BaseModel):
    status: ExecutionStatusResponse
    columns: List[str] = Field(default_factory=list)
    column_types: List[str] = Field(default_factory=list)
    rows: List[List[Any]] = Field(default_factory=list)
    truncated: bool = False


class CancelResponse(BaseModel):
    id: str
    cancelled: bool
    state: str


class SchemaResponse(BaseModel):
    connection_id: str
    table_count: int
    column_count: int
    schema_tree: Dict[str, Dict[str, List[Dict[str, str]]]] = Field(..., alias="schema")

    model_config = ConfigDict(populate_by_name=True)
