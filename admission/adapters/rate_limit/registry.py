"""Per-operation quota policies.

Reads vastly outnumber writes, so the registry keeps an immutable mapping and
swaps in a new copy under a writer lock. Readers never lock and never observe
a half-applied registration.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from admission.adapters.rate_limit.base import RateLimitConfig
from admission.core.errors import ConfigError

logger = logging.getLogger(__name__)


def _validate_positive_int(field: str, value: Any, operation: str) -> None:
    # bool is an int subclass; True must not pass as a quota of 1.
    valid = (
        isinstance(value, int)
        and not isinstance(value, bool)
        and value > 0
    )
    if not valid:
        if isinstance(value, float) and not math.isfinite(value):
            value = str(value)
        raise ConfigError(
            f"{field} must be a positive integer",
            details={"field": field, "operation": operation, "actual_value": value},
        )


def validate_config(operation: str, config: RateLimitConfig) -> None:
    """Check a policy before it is installed.

    Raises:
        ConfigError: If the operation name is empty, a limit is not a
            positive integer, or the key generator is not callable.
    """

    if not isinstance(operation, str) or not operation.strip():
        raise ConfigError(
            "operation name must be a non-empty string",
            details={"field": "operation", "actual_value": operation},
        )
    if not isinstance(config, RateLimitConfig):
        raise ConfigError(
            "config must be a RateLimitConfig",
            details={"field": "config", "operation": operation},
        )

    _validate_positive_int("max_requests", config.max_requests, operation)
    _validate_positive_int("window_ms", config.window_ms, operation)

    if config.key_generator is not None and not callable(config.key_generator):
        raise ConfigError(
            "key_generator must be callable",
            details={"field": "key_generator", "operation": operation},
        )


class ConfigRegistry:
    """Thread-safe registry of quota policies keyed by operation name."""

    def __init__(self, configs: Mapping[str, RateLimitConfig] | None = None) -> None:
        self._write_lock = threading.Lock()
        self._configs: Mapping[str, RateLimitConfig] = MappingProxyType({})
        if configs:
            self.load_policies(configs)

    def add_config(self, operation: str, config: RateLimitConfig) -> None:
        """Register or replace the policy for ``operation``.

        Entries already counting under the previous policy keep it until their
        current window rolls over.

        Raises:
            ConfigError: If the policy is invalid. Nothing is changed then.
        """

        validate_config(operation, config)

        with self._write_lock:
            replaced = operation in self._configs
            updated = dict(self._configs)
            updated[operation] = config
            self._configs = MappingProxyType(updated)

        logger.info(
            "admission.config_registered",
            extra={
                "operation": operation,
                "max_requests": config.max_requests,
                "window_ms": config.window_ms,
                "custom_key": config.key_generator is not None,
                "replaced": replaced,
            },
        )

    def load_policies(self, configs: Mapping[str, RateLimitConfig]) -> None:
        """Register several policies at once, all or nothing.

        Raises:
            ConfigError: If any policy is invalid. Nothing is changed then.
        """

        for operation, config in configs.items():
            validate_config(operation, config)

        with self._write_lock:
            updated = dict(self._configs)
            updated.update(configs)
            self._configs = MappingProxyType(updated)

        logger.info(
            "admission.policies_loaded",
            extra={"operations": sorted(configs), "count": len(configs)},
        )

    def get_config(self, operation: str) -> RateLimitConfig | None:
        """Return the policy for ``operation``, or None when not configured."""

        return self._configs.get(operation)

    def remove_config(self, operation: str) -> bool:
        """Unregister ``operation``. Returns whether a policy was removed."""

        with self._write_lock:
            if operation not in self._configs:
                return False
            updated = dict(self._configs)
            del updated[operation]
            self._configs = MappingProxyType(updated)

        logger.info("admission.config_removed", extra={"operation": operation})
        return True

    def operations(self) -> list[str]:
        return sorted(self._configs)

    def snapshot(self) -> Mapping[str, RateLimitConfig]:
        """Return the current read-only mapping of policies."""

        return self._configs

    def __contains__(self, operation: object) -> bool:
        return operation in self._configs

    def __len__(self) -> int:
        return len(self._configs)
