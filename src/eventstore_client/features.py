"""Server feature discovery.

Servers report which RPC methods they serve. The node selector asks once
per transport and operations check the answer before opening a call, so a
method an older server lacks fails fast with UnsupportedFeatureError.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from .protocol.messages import MessageKind, RawMessage, Request
from .translate import ResponseTranslator
from .usecase import UnaryUnary

SERVER_FEATURES_SERVICE = "event_store.client.server_features.ServerFeatures"


class SupportedMethod(BaseModel):
    """One method a server serves, with its optional feature flags."""

    model_config = ConfigDict(frozen=True)

    service_name: str
    method_name: str
    features: list[str] = Field(default_factory=list)

    @property
    def path(self) -> str:
        return f"/{self.service_name}/{self.method_name}"


class ServerInfo(BaseModel):
    """What a server reported about itself."""

    model_config = ConfigDict(frozen=True)

    server_version: str = ""
    supported_methods: list[SupportedMethod] = Field(default_factory=list)

    def method_paths(self) -> frozenset[str]:
        return frozenset(m.path for m in self.supported_methods)

    def is_supported(self, method: str) -> bool:
        """Whether `method` ("/service/Method") is served. Names are case-insensitive."""
        return is_method_supported(method, self.method_paths())


def is_method_supported(method: str, supported: frozenset[str]) -> bool:
    wanted = method.lower()
    return any(path.lower() == wanted for path in supported)


class ServerInfoTranslator(ResponseTranslator[ServerInfo]):
    def translate_message(self, message: RawMessage) -> ServerInfo:
        if message.kind != MessageKind.SUPPORTED_METHODS.value:
            raise self.unexpected(message)
        return ServerInfo(
            server_version=message.data.get("event_store_server_version") or "",
            supported_methods=[
                SupportedMethod.model_validate(m) for m in message.data.get("methods") or []
            ],
        )


class GetSupportedMethods(UnaryUnary[ServerInfo]):
    """Ask a node for its version and the methods it serves."""

    name = "ServerFeatures.GetSupportedMethods"
    method = f"/{SERVER_FEATURES_SERVICE}/GetSupportedMethods"

    def request_message(self) -> Request:
        return Request.create("get_supported_methods")

    def translator(self) -> ServerInfoTranslator:
        return ServerInfoTranslator()
