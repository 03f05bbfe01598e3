"""Lane routing tests."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from persistor.context.pool import ContextPool
from persistor.context.router import LaneRouter
from persistor.domain.model import Model
from persistor.utils.lanes import Lane, current_lane


@pytest.fixture
def pool(note_model: Model) -> Iterator[ContextPool]:
    pool = ContextPool(note_model, None)
    yield pool
    pool.close()


def test_interactive_lane_routes_to_interactive_context(pool: ContextPool) -> None:
    router = LaneRouter(pool.interactive, pool.worker)
    routed = pool.interactive.lane.perform_and_wait(lambda: router.route(current_lane()))
    assert routed is pool.interactive


def test_plain_threads_and_other_lanes_route_to_worker(pool: ContextPool) -> None:
    router = LaneRouter(pool.interactive, pool.worker)
    stranger = Lane("stranger")
    try:
        assert router.route(None) is pool.worker
        assert router.route(pool.worker.lane) is pool.worker
        assert router.route(stranger) is pool.worker
    finally:
        stranger.close()


def test_worker_is_child_of_interactive(pool: ContextPool) -> None:
    assert pool.worker.parent is pool.interactive
    assert pool.interactive.parent is None
    assert pool.interactive.token != pool.worker.token
    assert pool.contexts == (pool.interactive, pool.worker)
