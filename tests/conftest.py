import math

import numpy as np
import pytest

from bibfilter.geometry.cellid import CALO_ENCODING, TRACKER_ENCODING, CellIDDecoder
from bibfilter.physics.hits import Hit
from bibfilter.sim.synth import VERTEX_RADII_MM


@pytest.fixture
def tracker_decoder():
    return CellIDDecoder(TRACKER_ENCODING)


@pytest.fixture
def calo_decoder():
    return CellIDDecoder(CALO_ENCODING)


@pytest.fixture
def tracker_hit(tracker_decoder):
    """Factory: vertex hit on (layer, ladder) pointing along (theta, phi)."""

    def make(layer, theta, phi, ladder=0, side=0, sensor=0, u=0.0, v=0.0, time=0.0):
        r_t = VERTEX_RADII_MM[layer]
        pos = np.array([r_t * math.cos(phi), r_t * math.sin(phi), r_t / math.tan(theta)])
        cid = tracker_decoder.encode(system=1, side=side, layer=layer, module=ladder, sensor=sensor)
        return Hit(position=pos, energy=5e-5, time=time, cell_id=cid, u=u, v=v)

    return make


@pytest.fixture
def calo_hit(calo_decoder):
    """Factory: calorimeter hit on `layer` at polar angle theta (phi = 0)."""

    def make(layer, theta, energy, time=None):
        r_t = 1500.0 + 5.0 * layer
        pos = np.array([r_t, 0.0, r_t / math.tan(theta)])
        cid = calo_decoder.encode(system=20, layer=layer)
        t = float(np.linalg.norm(pos)) / 299.792458 if time is None else time
        return Hit(position=pos, energy=energy, time=t, cell_id=cid)

    return make
