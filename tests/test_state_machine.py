"""
Tests for canonical lifecycle ordering and the forward-progress rule.
"""
import itertools

import pytest

from paycore.services.state_machine import (
    CANCELLED, CANONICAL_STATUSES, COMPLETED, FAILED, PENDING, PROCESSING, REFUNDED,
    STATUS_RANK, furthest, is_forward_progress, is_terminal,
)


class TestForwardProgress:
    @pytest.mark.parametrize("target", [PROCESSING, COMPLETED, FAILED, CANCELLED])
    def test_pending_moves_to_any_later_state(self, target):
        assert is_forward_progress(PENDING, target)

    def test_pending_cannot_jump_to_refunded(self):
        assert not is_forward_progress(PENDING, REFUNDED)

    def test_only_completed_may_be_refunded(self):
        assert is_forward_progress(COMPLETED, REFUNDED)
        assert not is_forward_progress(FAILED, REFUNDED)
        assert not is_forward_progress(CANCELLED, REFUNDED)

    @pytest.mark.parametrize("status", CANONICAL_STATUSES)
    def test_same_status_is_not_progress(self, status):
        assert not is_forward_progress(status, status)

    @pytest.mark.parametrize("terminal", [FAILED, CANCELLED, REFUNDED])
    def test_dead_ends_accept_nothing(self, terminal):
        assert not any(is_forward_progress(terminal, target) for target in CANONICAL_STATUSES)

    def test_sibling_terminals_do_not_override_each_other(self):
        assert not is_forward_progress(COMPLETED, FAILED)
        assert not is_forward_progress(FAILED, COMPLETED)
        assert not is_forward_progress(COMPLETED, CANCELLED)

    def test_unknown_target_is_rejected(self):
        with pytest.raises(ValueError):
            is_forward_progress(PENDING, "settled")


class TestMonotonicity:
    def test_progress_never_lowers_rank(self):
        for current, target in itertools.product(CANONICAL_STATUSES, repeat=2):
            if is_forward_progress(current, target):
                assert STATUS_RANK[target] > STATUS_RANK[current]

    @pytest.mark.parametrize("first,second", list(itertools.product(CANONICAL_STATUSES, repeat=2)))
    def test_applying_an_earlier_status_keeps_the_later_one(self, first, second):
        result = furthest(first, second)
        assert STATUS_RANK[result] >= STATUS_RANK[first]
        if STATUS_RANK[second] <= STATUS_RANK[first]:
            assert result == first

    def test_terminal_set(self):
        assert {s for s in CANONICAL_STATUSES if is_terminal(s)} == {COMPLETED, FAILED, CANCELLED, REFUNDED}
