"""Protocol value types.

Plain, side-effect free values exchanged with agents. Wire (de)serialization
lives next to each type, and every type that the SDK also models converts to
and from the SDK's pydantic schema objects.
"""

from __future__ import annotations

import base64
import logging
import mimetypes
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Union

from acp import text_block
from acp.schema import (
    EmbeddedResourceContentBlock,
    EnvVariable as ACPEnvVariable,
    HttpHeader as ACPHttpHeader,
    HttpMcpServer,
    ImageContentBlock,
    McpServerStdio,
    ResourceContentBlock,
    SseMcpServer,
    TextResourceContents,
)

from .errors import DecodingError

# JSON type for metadata and wire payloads
JSON = Union[dict[str, "JSON"], list["JSON"], str, int, float, bool, None]

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionId:
    """Opaque session identifier issued by the agent."""

    value: str

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ClientInfo:
    name: str
    title: str
    version: str


@dataclass(frozen=True)
class AgentInfo:
    name: str
    title: str | None = None
    version: str | None = None

    @property
    def display_name(self) -> str:
        return self.title or self.name

    @classmethod
    def from_acp(cls, info: Any) -> AgentInfo | None:
        if info is None:
            return None
        return cls(
            name=getattr(info, "name", "") or "",
            title=getattr(info, "title", None),
            version=getattr(info, "version", None),
        )


@dataclass(frozen=True)
class AgentCapabilities:
    """Flattened view of what the agent said it supports during initialize."""

    load_session: bool = False
    image: bool = False
    audio: bool = False
    embedded_context: bool = False
    mcp_http: bool = False
    mcp_sse: bool = False

    @classmethod
    def from_acp(cls, caps: Any) -> AgentCapabilities:
        if caps is None:
            return cls()
        prompt = getattr(caps, "prompt_capabilities", None)
        mcp = getattr(caps, "mcp_capabilities", None)
        return cls(
            load_session=bool(getattr(caps, "load_session", False)),
            image=bool(getattr(prompt, "image", False)),
            audio=bool(getattr(prompt, "audio", False)),
            embedded_context=bool(getattr(prompt, "embedded_context", False)),
            mcp_http=bool(getattr(mcp, "http", False)),
            mcp_sse=bool(getattr(mcp, "sse", False)),
        )


@dataclass(frozen=True)
class AuthMethod:
    id: str
    name: str
    description: str | None = None

    @classmethod
    def from_acp(cls, method: Any) -> AuthMethod:
        return cls(
            id=method.id,
            name=getattr(method, "name", None) or method.id,
            description=getattr(method, "description", None),
        )


@dataclass(frozen=True)
class ModeInfo:
    id: str
    name: str
    description: str | None = None


@dataclass(frozen=True)
class ModesInfo:
    """Available session modes and the one currently selected.

    The current id is not guaranteed to be one of the available modes.
    """

    current_mode_id: str
    available_modes: tuple[ModeInfo, ...] = ()

    def current(self) -> ModeInfo | None:
        for mode in self.available_modes:
            if mode.id == self.current_mode_id:
                return mode
        return None

    def with_current(self, mode_id: str) -> ModesInfo:
        return ModesInfo(current_mode_id=mode_id, available_modes=self.available_modes)

    @classmethod
    def from_acp(cls, modes: Any) -> ModesInfo | None:
        if modes is None:
            return None
        return cls(
            current_mode_id=modes.current_mode_id,
            available_modes=tuple(
                ModeInfo(id=m.id, name=m.name, description=getattr(m, "description", None))
                for m in modes.available_modes or []
            ),
        )


@dataclass(frozen=True)
class ModelInfo:
    model_id: str
    name: str
    description: str | None = None


@dataclass(frozen=True)
class ModelsInfo:
    current_model_id: str
    available_models: tuple[ModelInfo, ...] = ()

    def current(self) -> ModelInfo | None:
        for model in self.available_models:
            if model.model_id == self.current_model_id:
                return model
        return None

    def with_current(self, model_id: str) -> ModelsInfo:
        return ModelsInfo(current_model_id=model_id, available_models=self.available_models)

    @classmethod
    def from_acp(cls, models: Any) -> ModelsInfo | None:
        if models is None:
            return None
        return cls(
            current_model_id=models.current_model_id,
            available_models=tuple(
                ModelInfo(
                    model_id=m.model_id,
                    name=m.name,
                    description=getattr(m, "description", None),
                )
                for m in models.available_models or []
            ),
        )


class StopReason(str, Enum):
    """Why a turn ended.

    ``ABORTED`` never appears on the wire. It is produced locally when the
    agent process goes away in the middle of a turn.
    """

    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    MAX_TURN_REQUESTS = "max_turn_requests"
    REFUSAL = "refusal"
    CANCELLED = "cancelled"
    ABORTED = "aborted"

    @classmethod
    def decode(cls, value: str) -> StopReason:
        """Decode a wire stop reason, rejecting anything outside the closed set."""
        if value == cls.ABORTED.value:
            raise DecodingError(f"Unknown stop reason: {value}", type_name=value)
        try:
            return cls(value)
        except ValueError:
            raise DecodingError(f"Unknown stop reason: {value}", type_name=value) from None


# ========== MCP server configuration ==========


@dataclass(frozen=True)
class EnvVariable:
    name: str
    value: str
    meta: dict[str, JSON] | None = None

    def encode(self) -> dict[str, JSON]:
        return _with_meta({"name": self.name, "value": self.value}, self.meta)

    @classmethod
    def decode(cls, payload: Mapping[str, Any]) -> EnvVariable:
        return cls(
            name=_require_str(payload, "name"),
            value=_require_str(payload, "value"),
            meta=payload.get("_meta"),
        )

    def to_acp(self) -> ACPEnvVariable:
        return ACPEnvVariable(name=self.name, value=self.value, _meta=self.meta)


@dataclass(frozen=True)
class HttpHeader:
    name: str
    value: str
    meta: dict[str, JSON] | None = None

    def encode(self) -> dict[str, JSON]:
        return _with_meta({"name": self.name, "value": self.value}, self.meta)

    @classmethod
    def decode(cls, payload: Mapping[str, Any]) -> HttpHeader:
        return cls(
            name=_require_str(payload, "name"),
            value=_require_str(payload, "value"),
            meta=payload.get("_meta"),
        )

    def to_acp(self) -> ACPHttpHeader:
        return ACPHttpHeader(name=self.name, value=self.value, _meta=self.meta)


@dataclass(frozen=True)
class StdioServerConfig:
    """MCP server launched by the agent as a child process."""

    name: str
    command: str
    args: tuple[str, ...] = ()
    env: tuple[EnvVariable, ...] = ()
    meta: dict[str, JSON] | None = None

    type = "stdio"

    def encode(self) -> dict[str, JSON]:
        payload: dict[str, JSON] = {
            "type": self.type,
            "name": self.name,
            "command": self.command,
            "args": list(self.args),
            "env": [var.encode() for var in self.env],
        }
        return _with_meta(payload, self.meta)

    @classmethod
    def decode(cls, payload: Mapping[str, Any]) -> StdioServerConfig:
        return cls(
            name=_require_str(payload, "name"),
            command=_require_str(payload, "command"),
            args=tuple(str(arg) for arg in payload.get("args") or ()),
            env=tuple(EnvVariable.decode(var) for var in payload.get("env") or ()),
            meta=payload.get("_meta"),
        )

    def to_acp(self) -> McpServerStdio:
        return McpServerStdio(
            type="stdio",
            name=self.name,
            command=self.command,
            args=list(self.args),
            env=[var.to_acp() for var in self.env],
            _meta=self.meta,
        )


@dataclass(frozen=True)
class HttpServerConfig:
    """MCP server reached over streamable HTTP."""

    name: str
    url: str
    headers: tuple[HttpHeader, ...] = ()
    meta: dict[str, JSON] | None = None

    type = "http"

    def encode(self) -> dict[str, JSON]:
        payload: dict[str, JSON] = {
            "type": self.type,
            "name": self.name,
            "url": self.url,
            "headers": [header.encode() for header in self.headers],
        }
        return _with_meta(payload, self.meta)

    @classmethod
    def decode(cls, payload: Mapping[str, Any]) -> HttpServerConfig:
        return cls(
            name=_require_str(payload, "name"),
            url=_require_str(payload, "url"),
            headers=tuple(HttpHeader.decode(h) for h in payload.get("headers") or ()),
            meta=payload.get("_meta"),
        )

    def to_acp(self) -> HttpMcpServer:
        return HttpMcpServer(
            type="http",
            name=self.name,
            url=self.url,
            headers=[header.to_acp() for header in self.headers],
            _meta=self.meta,
        )


@dataclass(frozen=True)
class SseServerConfig(HttpServerConfig):
    """MCP server reached over server-sent events."""

    type = "sse"

    def to_acp(self) -> SseMcpServer:  # type: ignore[override]
        return SseMcpServer(
            type="sse",
            name=self.name,
            url=self.url,
            headers=[header.to_acp() for header in self.headers],
            _meta=self.meta,
        )


MCPServerConfig = Union[StdioServerConfig, HttpServerConfig, SseServerConfig]

_MCP_SERVER_TYPES: dict[str, type[StdioServerConfig] | type[HttpServerConfig]] = {
    "stdio": StdioServerConfig,
    "http": HttpServerConfig,
    "sse": SseServerConfig,
}


def decode_mcp_server(payload: Mapping[str, Any]) -> MCPServerConfig:
    """Decode one MCP server entry, dispatching on its ``type`` field.

    Raises:
        DecodingError: if the discriminator is missing or unknown, or a
            required field is absent.
    """
    server_type = payload.get("type")
    config_cls = _MCP_SERVER_TYPES.get(server_type) if isinstance(server_type, str) else None
    if config_cls is None:
        raise DecodingError(f"Unknown MCP server type: {server_type}", type_name=str(server_type))
    return config_cls.decode(payload)


def decode_mcp_servers(payload: Sequence[Mapping[str, Any]]) -> list[MCPServerConfig]:
    return [decode_mcp_server(entry) for entry in payload]


def _require_str(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise DecodingError(f"Missing or invalid field: {key}")
    return value


def _with_meta(payload: dict[str, JSON], meta: dict[str, JSON] | None) -> dict[str, JSON]:
    if meta is not None:
        payload["_meta"] = meta
    return payload


# ========== Prompt attachments ==========

# Files up to this size are embedded in the prompt, larger ones are linked
EMBED_LIMIT = 20_000


@dataclass(frozen=True)
class Attachment:
    """Something sent alongside a prompt: a file, an image or a text snippet."""

    kind: str
    path: Path | None = None
    data: bytes | None = None
    mime_type: str | None = None
    content: str | None = None
    label: str | None = None

    @classmethod
    def file(cls, path: str | Path) -> Attachment:
        return cls(kind="file", path=Path(path))

    @classmethod
    def image(cls, data: bytes, mime_type: str = "image/png") -> Attachment:
        return cls(kind="image", data=data, mime_type=mime_type)

    @classmethod
    def text(cls, content: str, label: str | None = None) -> Attachment:
        return cls(kind="text", content=content, label=label)

    def to_blocks(self, cwd: str | Path) -> list[Any]:
        """Convert to ACP content blocks, resolving relative paths against ``cwd``."""
        if self.kind == "text":
            body = self.content or ""
            if self.label:
                body = f"{self.label}:\n{body}"
            return [text_block(body)]

        if self.kind == "image":
            encoded = base64.b64encode(self.data or b"").decode("ascii")
            return [
                ImageContentBlock(
                    type="image", data=encoded, mime_type=self.mime_type or "image/png"
                )
            ]

        if self.kind == "file":
            if self.path is None:
                raise ValueError("File attachment needs a path")
            path = self.path if self.path.is_absolute() else Path(cwd) / self.path
            return [_file_block(path)]

        raise ValueError(f"Unknown attachment kind: {self.kind}")


def _file_block(path: Path) -> Any:
    uri = path.resolve().as_uri()
    mime_type = mimetypes.guess_type(path.name)[0] or "text/plain"
    try:
        size = path.stat().st_size
    except OSError:
        size = None

    if size is not None and size <= EMBED_LIMIT and mime_type.startswith("text/"):
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            log.warning(f"Could not embed attachment {path}: {e}")
        else:
            res = TextResourceContents(text=text, uri=uri, mime_type=mime_type)
            return EmbeddedResourceContentBlock(resource=res, type="resource")

    return ResourceContentBlock(
        name=path.name,
        uri=uri,
        size=size,
        mime_type=mime_type,
        type="resource_link",
    )


__all__ = [
    "AgentCapabilities",
    "AgentInfo",
    "Attachment",
    "AuthMethod",
    "ClientInfo",
    "EnvVariable",
    "HttpHeader",
    "HttpServerConfig",
    "MCPServerConfig",
    "ModeInfo",
    "ModelInfo",
    "ModelsInfo",
    "ModesInfo",
    "SessionId",
    "SseServerConfig",
    "StdioServerConfig",
    "StopReason",
    "decode_mcp_server",
    "decode_mcp_servers",
]
