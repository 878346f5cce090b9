"""Tests for the quorum rule."""

from __future__ import annotations

from itertools import product

import pytest

from replywatch.config import get_settings
from replywatch.detection.quorum import QuorumPolicy, evaluate_quorum
from replywatch.schemas.detection import LayerResult


def _result(name: str, healthy: bool, found: bool = False) -> LayerResult:
    return LayerResult(layer=name, healthy=healthy, found=found)


@pytest.mark.parametrize(
    ("applicable", "expected"),
    [(1, 1), (2, 2), (3, 2), (4, 3), (5, 3)],
)
def test_default_threshold_is_strict_majority(applicable: int, expected: int) -> None:
    assert QuorumPolicy().threshold(applicable) == expected


def test_min_healthy_overrides_fraction_and_is_capped() -> None:
    assert QuorumPolicy(min_healthy=2).threshold(5) == 2
    assert QuorumPolicy(min_healthy=10).threshold(3) == 3
    assert QuorumPolicy(min_healthy=0).threshold(3) == 1


def test_every_health_and_found_combination_for_three_layers() -> None:
    names = ["a", "b", "c"]
    for flags in product([(True, True), (True, False), (False, True), (False, False)], repeat=3):
        results = [_result(n, healthy, found) for n, (healthy, found) in zip(names, flags)]
        quorum = evaluate_quorum(results)
        healthy_count = sum(1 for healthy, _ in flags if healthy)
        healthy_found = any(healthy and found for healthy, found in flags)

        assert quorum.quorum_met is (healthy_count >= 2)
        assert quorum.reply_found is (quorum.quorum_met and healthy_found)
        assert len(quorum.healthy_layers) + len(quorum.failed_layers) == 3


def test_found_only_by_unhealthy_layers_is_not_trusted() -> None:
    results = [
        _result("thread_continuity", healthy=True),
        _result("inbox_sweep", healthy=True),
        _result("alias_match", healthy=False, found=True),
    ]
    quorum = evaluate_quorum(results)
    assert quorum.quorum_met is True
    assert quorum.reply_found is False
    assert quorum.untrusted_found_layers == ["alias_match"]


def test_no_quorum_hides_a_healthy_find() -> None:
    results = [
        _result("thread_continuity", healthy=True, found=True),
        _result("inbox_sweep", healthy=False),
        _result("alias_match", healthy=False),
    ]
    quorum = evaluate_quorum(results)
    assert quorum.quorum_met is False
    assert quorum.reply_found is False
    assert quorum.found_layers == ["thread_continuity"]


def test_zero_applicable_layers_never_meets_quorum() -> None:
    quorum = evaluate_quorum([])
    assert quorum.quorum_met is False
    assert quorum.applicable == 0


def test_policy_from_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QUORUM_MIN_HEALTHY_LAYERS", "4")
    get_settings.cache_clear()
    policy = QuorumPolicy.from_settings()
    assert policy.min_healthy == 4
    assert policy.threshold(5) == 4

    monkeypatch.setenv("QUORUM_MIN_HEALTHY_LAYERS", "")
    monkeypatch.setenv("QUORUM_FRACTION", "0.75")
    get_settings.cache_clear()
    policy = QuorumPolicy.from_settings()
    assert policy.min_healthy is None
    assert policy.threshold(4) == 4
