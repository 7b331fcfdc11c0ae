"""Messages exchanged between the host and the indexing worker process.

Every message is a plain dict on the wire, validated into one of the models
below. Calls flow host to worker and are answered by a result carrying the
same correlation id. While serving a call the worker may ask the host for
embeddings; those requests use their own id sequence.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

METHODS = frozenset(
    {
        "initialize",
        "update_file",
        "delete_file",
        "rename_file",
        "search",
        "keyword_search",
        "search_in_paths",
        "get_similar",
        "get_neighbors",
        "get_centrality",
        "get_batch_centrality",
        "get_batch_metadata",
        "get_file_states",
        "prune_orphans",
        "update_alias_map",
        "assemble_context",
        "save_index",
        "load_index",
        "update_config",
        "full_reset",
        "clear_index",
        "stats",
    }
)


class CallMessage(BaseModel):
    kind: Literal["call"] = "call"
    id: int
    method: str
    params: Dict[str, Any] = Field(default_factory=dict)


class ResultMessage(BaseModel):
    kind: Literal["result"] = "result"
    id: int
    ok: bool = True
    result: Any = None
    error_type: Optional[str] = None
    error: Optional[str] = None


class EmbedRequest(BaseModel):
    kind: Literal["embed"] = "embed"
    id: int
    texts: List[str]


class EmbedResponse(BaseModel):
    kind: Literal["embedded"] = "embedded"
    id: int
    vectors: List[List[float]] = Field(default_factory=list)
    error_type: Optional[str] = None
    error: Optional[str] = None


class ShutdownMessage(BaseModel):
    kind: Literal["shutdown"] = "shutdown"


Message = Annotated[
    Union[CallMessage, ResultMessage, EmbedRequest, EmbedResponse, ShutdownMessage],
    Field(discriminator="kind"),
]

_ADAPTER: TypeAdapter[Message] = TypeAdapter(Message)


def encode(message: BaseModel) -> Dict[str, Any]:
    return message.model_dump()


def decode(raw: Dict[str, Any]) -> Message:
    return _ADAPTER.validate_python(raw)
