"""Startup-time registry of optional collaborators.

Components never go looking for a collaborator at the call site. They ask the
registry once and handle the ``None`` branch explicitly.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Type, TypeVar

import structlog

from codemend.core.errors import CodemendError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

FIX_GENERATOR = "fix_generator"
WEBHOOK = "webhook"
AUDIT = "audit"


class CapabilityRegistry:
    def __init__(self) -> None:
        self._capabilities: Dict[str, Any] = {}

    def register(self, name: str, instance: Any) -> None:
        if instance is None:
            logger.info("capability_unavailable", capability=name)
            return
        self._capabilities[name] = instance
        logger.info("capability_registered", capability=name, type=type(instance).__name__)

    def get(self, name: str, expected_type: Optional[Type[T]] = None) -> Optional[T]:
        instance = self._capabilities.get(name)
        if instance is not None and expected_type is not None and not isinstance(instance, expected_type):
            raise CodemendError(
                f"Capability '{name}' is a {type(instance).__name__}, expected {expected_type.__name__}"
            )
        return instance

    def require(self, name: str, error: Optional[Exception] = None) -> Any:
        instance = self._capabilities.get(name)
        if instance is None:
            raise error or CodemendError(f"Required capability '{name}' is not available")
        return instance

    def available(self) -> List[str]:
        return sorted(self._capabilities)

    def __contains__(self, name: str) -> bool:
        return name in self._capabilities
