"""Per-client asset visibility.

Decision chain for ``(client_id, asset_id)`` (evaluated in order)::

    1. client unknown                                     → hidden
    2. asset_id in the client's ``specific_assets``       → visible
    3. any pattern ``PREFIX*`` with asset_id.startswith   → visible
    4. any pattern without ``*`` equal to asset_id        → visible
    5. Otherwise                                          → hidden

This is the only place visibility is decided; the fan-out hub, the
registry listings and the ingestion scope all consult it.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from reefer_telemetry_bridge.config import ClientConfig

logger = logging.getLogger(__name__)


class _ClientRules:
    """Pre-compiled rules for one client."""

    def __init__(self, config: ClientConfig) -> None:
        self.config = config
        self.exact: set[str] = set(config.specific_assets)
        self.prefixes: tuple[str, ...] = tuple(
            p[:-1] for p in config.asset_patterns if p.endswith("*")
        )
        self.literals: set[str] = {
            p for p in config.asset_patterns if not p.endswith("*")
        }
        for pattern in config.asset_patterns:
            if "*" in pattern[:-1]:
                logger.warning(
                    "Client %s pattern %r: only a trailing '*' is a wildcard",
                    config.id,
                    pattern,
                )

    def matches(self, asset_id: str) -> bool:
        if asset_id in self.exact:
            return True
        if self.prefixes and asset_id.startswith(self.prefixes):
            return True
        return asset_id in self.literals


class VisibilityFilter:
    """Stateless predicate deciding which assets each client may see."""

    def __init__(self, clients: Iterable[ClientConfig]) -> None:
        self._rules: dict[str, _ClientRules] = {c.id: _ClientRules(c) for c in clients}

    def __call__(self, client_id: str, asset_id: Optional[str]) -> bool:
        return self.is_visible(client_id, asset_id)

    def is_visible(self, client_id: str, asset_id: Optional[str]) -> bool:
        """Return ``True`` when *asset_id* is exposed to *client_id*."""
        if not asset_id:
            return False
        rules = self._rules.get(client_id)
        if rules is None:
            logger.debug("Visibility check for unknown client %s", client_id)
            return False
        return rules.matches(asset_id)

    def predicate_for(self, client_id: str) -> Callable[[str], bool]:
        """Single-argument predicate bound to *client_id* (for the fan-out hub)."""

        def _predicate(asset_id: str) -> bool:
            return self.is_visible(client_id, asset_id)

        return _predicate

    def client(self, client_id: str) -> Optional[ClientConfig]:
        rules = self._rules.get(client_id)
        return rules.config if rules else None

    def clients(self) -> list[ClientConfig]:
        return [r.config for r in self._rules.values()]

    def expected_assets(self, client_id: str) -> list[str]:
        """The client's explicit allow-list, in configured order."""
        rules = self._rules.get(client_id)
        return list(rules.config.specific_assets) if rules else []
