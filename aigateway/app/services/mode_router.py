from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from aigateway.app.config.settings import ConfigSnapshot
from aigateway.app.providers.registry import ResolvedModel
from aigateway.app.providers.types import Capability

logger = logging.getLogger("aigateway")

ConnectionMode = Literal["server", "direct"]


@dataclass(frozen=True)
class DirectGrant:
    """Everything a caller needs to reach the provider itself.

    Never carries the server-held credential: the caller authenticates with
    its own key. Once the caller connects directly the gateway cannot enforce
    the idle timeout, the absolute timeout or the response size cap, so
    ``limits_enforced`` is always False.
    """

    provider_id: str
    kind: str
    base_url: str
    model: str
    messages: list[dict]
    limits_enforced: bool = False


class ModeRouter:
    """Chooses between proxying a provider stream and handing out direct connection parameters."""

    def choose(
        self,
        requested: str | None,
        resolved: ResolvedModel,
        snapshot: ConfigSnapshot,
    ) -> ConnectionMode:
        wanted = (requested or snapshot.default_connection_mode).lower()
        if wanted != "direct":
            return "server"
        # Direct mode only for streamed text, and only where both config and provider allow it.
        if not snapshot.allow_direct_mode:
            logger.info("Direct mode disabled, using server mode", extra={"provider_id": resolved.provider_id})
            return "server"
        if not resolved.provider.allow_direct or resolved.capability != Capability.TEXT:
            logger.info("Provider not enabled for direct mode, using server mode",
                        extra={"provider_id": resolved.provider_id})
            return "server"
        return "direct"

    def grant(self, resolved: ResolvedModel, messages: list[dict]) -> DirectGrant:
        spec = resolved.provider
        return DirectGrant(
            provider_id=spec.provider_id,
            kind=spec.kind,
            base_url=spec.base_url,
            model=resolved.model_id,
            messages=messages,
        )


mode_router = ModeRouter()
