"""Blocking policy: which domains are blocked right now, and enforcement."""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Protocol, Sequence

from .errors import RuleInstallError
from .models import BlockingState, BlockRule, BlockRuleSet, Decision, FocusSession
from .normalization import host_from_url, matches_any

logger = logging.getLogger(__name__)

BLOCK_PAGE_URL = "/blocked"


class RuleBackend(Protocol):
    """Where block rules are installed (browser rule engine, proxy, hosts file)."""

    async def installed_rule_ids(self) -> list[int]: ...

    async def update_rules(
        self, remove_ids: Sequence[int], add_rules: Sequence[BlockRule]
    ) -> None:
        """Remove then add in one step; on error nothing is applied."""
        ...


class InMemoryRuleBackend:
    def __init__(self) -> None:
        self.rules: dict[int, BlockRule] = {}
        self.updates = 0

    async def installed_rule_ids(self) -> list[int]:
        return sorted(self.rules)

    async def update_rules(
        self, remove_ids: Sequence[int], add_rules: Sequence[BlockRule]
    ) -> None:
        remaining = {rid: rule for rid, rule in self.rules.items() if rid not in set(remove_ids)}
        for rule in add_rules:
            if rule.id in remaining:
                raise RuleInstallError(f"rule id {rule.id} is already installed")
            remaining[rule.id] = rule
        self.rules = remaining
        self.updates += 1

    def domains(self) -> set[str]:
        return {rule.domain for rule in self.rules.values()}


def build_rule_set(domains: Iterable[str], redirect_url: str = BLOCK_PAGE_URL) -> BlockRuleSet:
    """Render one redirect rule per distinct domain, ids counting from 1."""
    seen: list[str] = []
    for domain in domains:
        if domain and domain not in seen:
            seen.append(domain)
    return BlockRuleSet(
        tuple(
            BlockRule(id=index, domain=domain, redirect_url=redirect_url)
            for index, domain in enumerate(seen, start=1)
        )
    )


class BlockingPolicyEngine:
    """Derives the block rule set and answers navigation decisions.

    ``decide`` only reads in-memory state. ``recompute_rules`` is the one
    place that talks to the backend; it always replaces every installed rule
    in a single update, so a failure leaves the previous set in force and the
    next recompute starts again from scratch.
    """

    def __init__(
        self,
        backend: Optional[RuleBackend] = None,
        *,
        redirect_url: str = BLOCK_PAGE_URL,
    ) -> None:
        self.backend: RuleBackend = backend or InMemoryRuleBackend()
        self.redirect_url = redirect_url
        self.state = BlockingState()
        self._blocked: list[str] = []
        self._effective = BlockRuleSet()
        self._pending = True

    @property
    def blocked_domains(self) -> list[str]:
        return list(self._blocked)

    @property
    def effective_rules(self) -> BlockRuleSet:
        return self._effective

    @property
    def pending(self) -> bool:
        """True until the backend reflects the current inputs."""
        return self._pending

    def set_blocked_domains(self, domains: Iterable[str]) -> None:
        self._blocked = [domain for domain in domains if domain]
        self._pending = True

    def set_manual_enabled(self, enabled: bool) -> None:
        self.state.manual_enabled = enabled
        self._pending = True

    def set_focus_session(self, session: Optional[FocusSession]) -> None:
        self.state.focus_session = session
        self._pending = True

    def derive_rules(self) -> BlockRuleSet:
        if not self.state.active:
            return BlockRuleSet()
        return build_rule_set(self._blocked, self.redirect_url)

    async def recompute_rules(self) -> bool:
        desired = self.derive_rules()
        try:
            installed = await self.backend.installed_rule_ids()
            await self.backend.update_rules(installed, desired.rules)
        except Exception:
            self._pending = True
            logger.exception(
                "Failed to install %d block rule(s); keeping %d previous rule(s)",
                len(desired),
                len(self._effective),
            )
            return False
        self._effective = desired
        self._pending = False
        logger.debug(
            "Installed %d block rule(s); blocking %s",
            len(desired),
            "on" if self.state.active else "off",
        )
        return True

    def decide(self, url: str) -> Decision:
        if not self.state.active or not self._effective:
            return Decision.ALLOW
        host = host_from_url(url)
        if host is None:
            return Decision.ALLOW
        if matches_any(host, self._effective.domains):
            return Decision.BLOCK
        return Decision.ALLOW
