"""BatchPlanner: Turns per-feed staleness results into batch submissions.

A batch is the atomic unit of submission. As soon as one member feed is due
the whole batch is proposed, carrying the current candidate value of every
member, since the multicall updates all of them at once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Mapping

if TYPE_CHECKING:
    from .HermesClient import PriceAttestation
    from .StalenessEvaluator import StalenessResult
    from .UpdaterConfig import BatchConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchCandidate:
    """A batch proposed for submission.

    :ivar batch: Batch configuration.
    :ivar due_feeds: Ids of the member feeds that triggered the batch.
    :ivar results: Staleness results of every member.
    :ivar values: Candidate attestation of every member that has one.
    """

    batch: BatchConfig
    due_feeds: tuple[str, ...]
    results: Mapping[str, StalenessResult] = field(default_factory=dict)
    values: Mapping[str, PriceAttestation] = field(default_factory=dict)

    @property
    def batch_id(self) -> str:
        return self.batch.batch_id

    def update_data_by_oracle(self) -> dict[str, list[bytes]]:
        """Group distinct update payloads by destination oracle.

        Hermes returns one payload covering several feeds, so members fetched
        together share it; each payload is sent once per oracle.

        :returns: Oracle address to ordered, de-duplicated payloads.
        """
        grouped: dict[str, list[bytes]] = {}
        for feed in self.batch.feeds:
            attestation = self.values.get(feed.address)
            if attestation is None:
                continue
            payloads = grouped.setdefault(feed.oracle_address, [])
            if attestation.update_data not in payloads:
                payloads.append(attestation.update_data)
        return grouped

    def describe(self) -> str:
        """Short summary for logs, e.g. ``WETH/USD(heartbeat), G/USD(deviation)``."""
        names = {f.address: f.description for f in self.batch.feeds}
        return ", ".join(
            f"{names.get(fid, fid[:10])}({self.results[fid].reason.value})"
            for fid in self.due_feeds
        )


def plan_batch(
    batch: BatchConfig,
    results: Mapping[str, StalenessResult],
    attestations: Mapping[str, PriceAttestation],
) -> BatchCandidate | None:
    """Propose a batch if any member is due.

    :param batch: Batch to plan.
    :param results: Staleness results keyed by feed id.
    :param attestations: Fetched prices keyed by feed id.
    :returns: Candidate, or None when no member is due.
    """
    due = tuple(
        f.address for f in batch.feeds if (r := results.get(f.address)) is not None and r.due
    )
    if not due:
        logger.debug(f"[{batch.batch_id}] Nothing due")
        return None

    members = {f.address for f in batch.feeds}
    return BatchCandidate(
        batch=batch,
        due_feeds=due,
        results={k: v for k, v in results.items() if k in members},
        values={k: v for k, v in attestations.items() if k in members},
    )
