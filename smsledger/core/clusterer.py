"""
Clustering of unresolved messages to amortize generative calls.

Messages are partitioned by normalized sender, then greedily clustered by
embedding similarity inside each partition. Only each cluster's seed is sent
to Tier 3; the result is applied to every member.
"""

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .errors import PipelineCancelled
from .models import EmbeddedMessage
from .similarity import SimilarityThresholds, cosine_similarity

logger = logging.getLogger(__name__)

_ADDRESS_NOISE = re.compile(r"[-\s().]")


def normalize_address(address: str) -> str:
    """
    Canonical sender key: punctuation/whitespace stripped, +82/82 prefix
    folded into a leading 0.

        "+82 10-1234-5678" -> "01012345678"
        "1588-1688"        -> "15881688"
    """
    cleaned = _ADDRESS_NOISE.sub("", address or "")
    if cleaned.startswith("+82"):
        return "0" + cleaned[3:]
    if cleaned.startswith("82") and len(cleaned) >= 11:
        return "0" + cleaned[2:]
    return cleaned


@dataclass
class MessageCluster:
    """Near-duplicate messages from one sender. members[0] is the seed."""
    sender: str
    members: List[EmbeddedMessage] = field(default_factory=list)

    @property
    def seed(self) -> EmbeddedMessage:
        return self.members[0]

    @property
    def size(self) -> int:
        return len(self.members)


@dataclass
class SourceGroup:
    """
    All clusters of one sender. The largest is the main format; the rest
    are exception formats (e.g. a cancellation notice next to payments).
    """
    sender: str
    main: MessageCluster
    exceptions: List[MessageCluster] = field(default_factory=list)

    @property
    def clusters(self) -> List[MessageCluster]:
        return [self.main] + self.exceptions


class ComparisonTicker:
    """Per-run comparison counter; every `every` ticks, check cancellation and yield."""

    def __init__(self, every: int, cancel_event: Optional[threading.Event] = None):
        self.every = max(1, every)
        self.cancel_event = cancel_event
        self.count = 0

    def tick(self) -> None:
        self.count += 1
        if self.count % self.every:
            return
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise PipelineCancelled("cancelled during clustering")
        time.sleep(0)


class Clusterer:
    """
    Greedy single-pass clustering.

    Usage:
        groups = Clusterer(thresholds).build_source_groups(embedded, cancel_event)
    """

    def __init__(
        self,
        thresholds: Optional[SimilarityThresholds] = None,
        small_group_max: int = 5,
        yield_every: int = 50,
    ):
        self.thresholds = thresholds or SimilarityThresholds()
        self.small_group_max = small_group_max
        self.yield_every = max(1, yield_every)

    @staticmethod
    def partition_by_sender(items: List[EmbeddedMessage]) -> Dict[str, List[EmbeddedMessage]]:
        """Insertion-ordered partition by normalized sender."""
        partitions: Dict[str, List[EmbeddedMessage]] = {}
        for item in items:
            key = normalize_address(item.message.sender_address)
            partitions.setdefault(key, []).append(item)
        return partitions

    def greedy_cluster(
        self,
        sender: str,
        items: List[EmbeddedMessage],
        cancel_event: Optional[threading.Event] = None,
        ticker: Optional[ComparisonTicker] = None,
    ) -> List[MessageCluster]:
        """
        First unassigned item seeds a cluster and absorbs every later
        unassigned item whose similarity to the seed is >= grouping.
        """
        ticker = ticker or ComparisonTicker(self.yield_every, cancel_event)
        assigned = [False] * len(items)
        clusters: List[MessageCluster] = []

        for i, seed in enumerate(items):
            if assigned[i]:
                continue
            assigned[i] = True
            cluster = MessageCluster(sender=sender, members=[seed])

            for j in range(i + 1, len(items)):
                if assigned[j]:
                    continue
                ticker.tick()
                similarity = cosine_similarity(seed.vector, items[j].vector)
                if self.thresholds.should_group(similarity):
                    cluster.members.append(items[j])
                    assigned[j] = True

            clusters.append(cluster)

        return clusters

    def merge_small_clusters(self, clusters: List[MessageCluster]) -> List[MessageCluster]:
        """
        Fold clusters of size <= small_group_max into the largest cluster
        when seed-to-seed similarity >= small_group_merge. Dissimilar small
        clusters stay independent.
        """
        if len(clusters) <= 1:
            return clusters

        largest = max(clusters, key=lambda c: c.size)
        result = [largest]
        for cluster in clusters:
            if cluster is largest:
                continue
            if cluster.size <= self.small_group_max:
                similarity = cosine_similarity(largest.seed.vector, cluster.seed.vector)
                if similarity >= self.thresholds.small_group_merge:
                    largest.members.extend(cluster.members)
                    logger.debug(
                        f"Merged cluster of {cluster.size} into main ({similarity:.3f}) for {cluster.sender}"
                    )
                    continue
            result.append(cluster)

        return result

    def cluster(
        self,
        items: List[EmbeddedMessage],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[MessageCluster]:
        """Partition, greedy-cluster and merge; flat list across all senders."""
        return [c for group in self.build_source_groups(items, cancel_event) for c in group.clusters]

    def build_source_groups(
        self,
        items: List[EmbeddedMessage],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[SourceGroup]:
        ticker = ComparisonTicker(self.yield_every, cancel_event)
        groups: List[SourceGroup] = []

        for sender, partition in self.partition_by_sender(items).items():
            clusters = self.merge_small_clusters(self.greedy_cluster(sender, partition, cancel_event, ticker))
            # merge_small_clusters puts the largest first
            groups.append(SourceGroup(sender=sender, main=clusters[0], exceptions=clusters[1:]))

        total = sum(len(g.clusters) for g in groups)
        logger.info(f"Clustered {len(items)} messages into {total} clusters ({len(groups)} senders)")
        return groups
