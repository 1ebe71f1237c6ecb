"""
Unit tests for sender partitioning and greedy clustering.
"""

import math
import threading

import pytest

from smsledger.core.clusterer import Clusterer, ComparisonTicker, normalize_address
from smsledger.core.errors import PipelineCancelled
from smsledger.core.models import EmbeddedMessage, Message

PAYMENT = [1.0, 0.0, 0.0]
CANCEL = [0.0, 1.0, 0.0]


def near(similarity):
    return [similarity, math.sqrt(1.0 - similarity * similarity), 0.0]


def item(index, vector, sender="1588-1688"):
    return EmbeddedMessage(Message(f"m{index}", f"body {index}", sender, 0), "tpl", vector, index)


@pytest.mark.parametrize("raw, expected", [
    ("1588-1688", "15881688"),
    ("+82 10-1234-5678", "01012345678"),
    ("821012345678", "01012345678"),
    ("(02) 123.4567", "021234567"),
    ("", ""),
    (None, ""),
])
def test_normalize_address(raw, expected):
    assert normalize_address(raw) == expected


class TestClusterer:
    def setup_method(self):
        self.clusterer = Clusterer()

    def test_partition_folds_address_formats(self):
        partitions = Clusterer.partition_by_sender([
            item(0, PAYMENT, "1588-1688"),
            item(1, PAYMENT, "15881688"),
            item(2, PAYMENT, "02-000-0000"),
        ])
        assert list(partitions) == ["15881688", "020000000"]
        assert len(partitions["15881688"]) == 2

    def test_main_and_exception_clusters(self):
        items = [item(0, CANCEL), item(1, PAYMENT), item(2, PAYMENT), item(3, CANCEL), item(4, PAYMENT)]
        groups = self.clusterer.build_source_groups(items)

        assert len(groups) == 1
        group = groups[0]
        assert group.sender == "15881688"
        assert [m.index for m in group.main.members] == [1, 2, 4]
        assert len(group.exceptions) == 1
        assert [m.index for m in group.exceptions[0].members] == [0, 3]
        assert group.main.seed.index == 1

    def test_seed_is_first_member(self):
        clusters = self.clusterer.greedy_cluster("s", [item(0, PAYMENT), item(1, near(0.96))])
        assert len(clusters) == 1
        assert clusters[0].seed.index == 0

    def test_grouping_is_relative_to_seed(self):
        clusters = self.clusterer.greedy_cluster("s", [item(0, PAYMENT), item(1, near(0.9)), item(2, near(0.9))])
        assert [c.size for c in clusters] == [1, 2]

    def test_similar_small_cluster_merges_into_main(self):
        items = [item(0, PAYMENT), item(1, PAYMENT), item(2, PAYMENT), item(3, near(0.8)), item(4, near(0.8))]
        groups = self.clusterer.build_source_groups(items)
        assert groups[0].main.size == 5
        assert groups[0].exceptions == []

    def test_large_cluster_is_not_merged(self):
        clusterer = Clusterer(small_group_max=1)
        items = [item(0, PAYMENT), item(1, PAYMENT), item(2, PAYMENT), item(3, near(0.8)), item(4, near(0.8))]
        groups = clusterer.build_source_groups(items)
        assert [c.size for c in groups[0].clusters] == [3, 2]

    def test_senders_never_mix(self):
        items = [item(0, PAYMENT, "1588-1688"), item(1, PAYMENT, "1544-7200")]
        clusters = self.clusterer.cluster(items)
        assert [c.size for c in clusters] == [1, 1]
        assert {c.sender for c in clusters} == {"15881688", "15447200"}

    def test_cancellation(self):
        cancel = threading.Event()
        cancel.set()
        clusterer = Clusterer(yield_every=1)
        with pytest.raises(PipelineCancelled):
            clusterer.build_source_groups([item(0, PAYMENT), item(1, CANCEL)], cancel)

    def test_comparison_count_is_per_run(self):
        cancel = threading.Event()
        cancel.set()
        clusterer = Clusterer(yield_every=2)
        pair = [item(0, PAYMENT), item(1, CANCEL)]
        # One comparison per run never reaches the cadence, however many runs share the clusterer
        for _ in range(3):
            assert len(clusterer.greedy_cluster("s", pair, cancel)) == 2

    def test_ticker_checks_cancel_on_cadence(self):
        cancel = threading.Event()
        ticker = ComparisonTicker(2, cancel)
        ticker.tick()
        cancel.set()
        with pytest.raises(PipelineCancelled):
            ticker.tick()
        assert ticker.count == 2

    def test_empty(self):
        assert self.clusterer.build_source_groups([]) == []
