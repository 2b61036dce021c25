"""
Retention policy enforcement on remote targets.

Archives are matched by the naming convention and ordered by the timestamp
embedded in their file names, never by remote modification times. Only
archives whose prefix belongs to the current run's sources are considered.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Dict, Iterable, Callable, Optional

from .compression import parse_archive_filename
from .profile import RemoteTarget, RetentionPolicy, RetentionKind
from .storage import Transport, StorageError

logger = logging.getLogger(__name__)


class RetentionError(StorageError):
    """Raised when a retention listing or deletion fails."""
    pass


@dataclass
class DeletionSummary:
    """Per-target result of a retention sweep."""
    target: str
    found: int = 0
    deleted: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


def select_for_deletion(names: Iterable[str], policy: RetentionPolicy, prefixes: Iterable[str],
                        now: Optional[datetime] = None) -> Dict[str, List[str]]:
    """
    Decide which archives a policy removes.

    Args:
        names: File names found on a target
        policy: Retention policy
        prefixes: Archive name prefixes the policy applies to
        now: Reference time for the days policy (defaults to now)

    Returns:
        Dict of prefix -> file names to delete (oldest first)
    """
    wanted = set(prefixes)
    groups: Dict[str, List] = {prefix: [] for prefix in wanted}
    for name in names:
        parsed = parse_archive_filename(name)
        if parsed and parsed[0] in wanted:
            groups[parsed[0]].append((parsed[1], name))

    doomed = {}
    for prefix, entries in groups.items():
        entries.sort()
        if policy.kind is RetentionKind.COUNT:
            excess = len(entries) - policy.keep
            selected = entries[:excess] if excess > 0 else []
        elif policy.kind is RetentionKind.DAYS:
            cutoff = (now or datetime.now()) - timedelta(days=policy.keep)
            selected = [entry for entry in entries if entry[0] < cutoff]
        else:
            selected = []
        doomed[prefix] = [name for _, name in selected]
    return doomed


class RetentionEnforcer:
    """
    Applies a retention policy to every enabled target.

    Deletion is best-effort: a failed delete is counted and logged, and the
    sweep continues with the remaining files and targets.
    """

    def __init__(self, transport_factory: Callable[[RemoteTarget], Transport],
                 log: Callable[[str], None] = None):
        """
        Initialize retention enforcer.

        Args:
            transport_factory: Builds the transport for a target
            log: Optional run-log sink (defaults to the module logger)
        """
        self.transport_factory = transport_factory
        self._log = log or logger.info

    def enforce(self, targets: List[RemoteTarget], policy: RetentionPolicy,
                prefixes: Iterable[str]) -> List[DeletionSummary]:
        """
        Enforce ``policy`` on each enabled target.

        Args:
            targets: Targets in enable-order (disabled ones are skipped)
            policy: Retention policy; NONE is a no-op
            prefixes: Archive prefixes produced by this run's sources

        Returns:
            One DeletionSummary per enabled target (empty list for NONE)
        """
        if policy.kind is RetentionKind.NONE:
            self._log("Retention: keep everything, skipping cleanup")
            return []

        prefixes = sorted(set(prefixes))
        self._log(f"Applying retention policy ({policy.describe()}) to {', '.join(prefixes)}")

        summaries = []
        for target in targets:
            if target.enabled:
                summaries.append(self._enforce_target(target, policy, prefixes))
        return summaries

    def _enforce_target(self, target: RemoteTarget, policy: RetentionPolicy,
                        prefixes: List[str]) -> DeletionSummary:
        summary = DeletionSummary(target.name)
        try:
            transport = self.transport_factory(target)
            entries = transport.list()
        except StorageError as e:
            error = RetentionError(f"Failed to list archives on {target.name}: {e}")
            logger.error(str(error))
            summary.errors.append(str(error))
            return summary

        names = [entry.name for entry in entries]
        for name in names:
            parsed = parse_archive_filename(name)
            if parsed and parsed[0] in prefixes:
                summary.found += 1

        for doomed in select_for_deletion(names, policy, prefixes).values():
            for name in doomed:
                try:
                    transport.delete(name)
                    summary.deleted += 1
                    self._log(f"Deleted old archive {transport.ref(name)}")
                except StorageError as e:
                    summary.failed += 1
                    error = f"Failed to delete {transport.ref(name)}: {e}"
                    summary.errors.append(error)
                    logger.error(error)

        self._log(
            f"Retention on {target.name}: found {summary.found}, "
            f"deleted {summary.deleted}, failed {summary.failed}"
        )
        return summary
