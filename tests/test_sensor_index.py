import numpy as np
import pytest

from bibfilter.filters.acceptance import AcceptanceMap
from bibfilter.geometry.sensor_index import SensorIndex
from bibfilter.physics.hits import SensorAddress


def test_index_groups_hits_by_sensor():
    a = SensorAddress(0, 0, 1, 0)
    b = SensorAddress(1, 0, 1, 0)
    idx = SensorIndex.from_addresses([a, b, a, a])
    assert idx.get(a) == (0, 2, 3)
    assert idx.get(b) == (1,)
    assert idx.get(SensorAddress(7, 0, 0, 0)) == ()
    assert len(idx) == 2 and idx.n_hits == 4
    assert idx.address_of(1) == b
    assert a in idx and SensorAddress(3, 0, 0, 0) not in idx
    assert list(idx) == [a, b]


def test_build_from_hits(tracker_hit, tracker_decoder):
    hits = [tracker_hit(2, 1.0, 0.1, ladder=4), tracker_hit(3, 1.0, 0.1, ladder=4)]
    idx = SensorIndex.build(hits, tracker_decoder)
    assert idx.get(SensorAddress(3, 0, 4, 0)) == (1,)
    assert idx.address_of(0).with_layer(3) == idx.address_of(1)


def test_acceptance_reset_does_not_leak():
    acc = AcceptanceMap(4)
    acc.reset(4)
    acc.accept(3)
    acc.reset(2)
    assert len(acc) == 2 and acc.count() == 0
    with pytest.raises(IndexError):
        acc[3]
    acc.reset(4)
    assert not acc[3]


def test_acceptance_grows_and_mask_is_readonly():
    acc = AcceptanceMap()
    acc.reset(10)
    assert acc.capacity >= 10
    acc.accept(0)
    m = acc.mask
    assert m.tolist()[:2] == [True, False]
    with pytest.raises(ValueError):
        m[1] = True
    arr = acc.to_array()
    arr[1] = True
    assert not acc[1]
    assert np.count_nonzero(arr) == 2
    with pytest.raises(ValueError):
        acc.reset(-1)
