import logging
import math
from dataclasses import replace

import numpy as np
import pytest

from bibfilter.filters.dedup import DedupFilter
from bibfilter.filters.selectors import ConeSelector, TimeWindowSelector
from bibfilter.geometry.sensor_index import SensorIndex
from bibfilter.physics.hits import C_MM_PER_NS, Hit, MCParticle


def test_dedup_removes_used_hits_keeps_order(tracker_hit, tracker_decoder):
    pool = [
        tracker_hit(0, 1.0, 0.1, u=1.0, v=2.0),
        tracker_hit(0, 1.0, 0.1, u=1.5, v=2.0),
        tracker_hit(1, 1.0, 0.1, u=1.0, v=2.0),
        tracker_hit(2, 1.5, -1.0, ladder=3, u=-4.0, v=0.5),
        tracker_hit(3, 1.5, -1.0, ladder=3, u=-4.0, v=0.5),
    ]
    # a used hit matches by sensor and (u, v), not by identity
    used = [pool[0], replace(pool[3]), pool[4]]
    index = SensorIndex.build(pool, tracker_decoder)
    res = DedupFilter().filter(pool, used, index, tracker_decoder)

    assert res.removed.tolist() == [True, False, False, True, True]
    assert res.remaining == [pool[1], pool[2]]
    assert res.n_removed == 3 and res.n_missing == 0
    assert len(res.remaining) + res.n_removed == len(pool)


def test_dedup_reports_unknown_sensor(tracker_hit, tracker_decoder, caplog):
    pool = [tracker_hit(0, 1.0, 0.1)]
    stray = tracker_hit(5, 1.0, 0.1, ladder=9)
    index = SensorIndex.build(pool, tracker_decoder)
    with caplog.at_level(logging.ERROR, logger="bibfilter"):
        res = DedupFilter().filter(pool, [stray], index, tracker_decoder)
    assert res.n_missing == 1 and res.remaining == pool
    assert "not found in hit pool" in caplog.text


def test_dedup_nothing_used(tracker_hit, tracker_decoder):
    pool = [tracker_hit(0, 1.0, 0.1), tracker_hit(1, 1.0, 0.1)]
    res = DedupFilter().filter(pool, [], SensorIndex.build(pool, tracker_decoder), tracker_decoder)
    assert res.remaining == pool and res.n_removed == 0


def _timed(r_t, t_arr, offset=0.2167):
    return Hit(position=np.array([r_t, 0.0, 10.0]), time=t_arr + r_t / C_MM_PER_NS - offset)


def test_time_window_open_interval():
    sel = TimeWindowSelector()
    hits = [_timed(30.0, 0.0), _timed(104.0, 0.1), _timed(51.0, -0.2), _timed(74.0, 0.3)]
    assert sel.select(hits).tolist() == [True, True, False, False]
    assert sel.arrival_time(hits[1]) == pytest.approx(0.1)
    assert TimeWindowSelector(t_min=-1.0, t_max=1.0).select(hits).all()
    assert sel.select([]).shape == (0,)


def test_cone_uses_generator_particles_only():
    sel = ConeSelector(cone_width=0.2)
    parts = [
        MCParticle(momentum=np.array([10.0, 0.0, 0.0]), energy=10.0, generator_status=1),
        MCParticle(momentum=np.array([0.0, 10.0, 0.0]), energy=10.0, generator_status=2),
    ]
    hits = [
        Hit(position=np.array([1500.0, 1500.0 * math.tan(0.1), 0.0])),  # 0.1 rad from +x
        Hit(position=np.array([1500.0, 1500.0 * math.tan(0.3), 0.0])),  # 0.3 rad
        Hit(position=np.array([0.0, 1500.0, 0.0])),  # on the status-2 particle
    ]
    assert sel.select(hits, parts).tolist() == [True, False, False]
    assert not sel.select(hits, parts[1:]).any()
