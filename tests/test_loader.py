import numpy as np
import pytest
import gtsam

from robust_pgo.loader import G2oFormatError, format_g2o, load_g2o, parse_g2o_lines, write_g2o
from robust_pgo.models import PriorFactor
from robust_pgo.solver import RobustSolver
from tests.scenarios import max_translation_error, odometry_factors, square_ground_truth, square_scenario

G2O_2D = """\
VERTEX_SE2 0 0.0 0.0 0.0
VERTEX_SE2 1 1.0 0.0 0.0
VERTEX_SE2 2 2.0 0.0 0.1
EDGE_SE2 0 1 1.0 0.0 0.0 400.0 0.0 0.0 400.0 0.0 40000.0
EDGE_SE2 1 2 1.0 0.0 0.1 400.0 0.0 0.0 400.0 0.0 40000.0
EDGE_SE2 2 0 -2.0 0.0 -0.1 100.0 0.0 0.0 100.0 0.0 10000.0
"""

G2O_3D = """\
# comment lines are ignored
VERTEX_SE3:QUAT 0 0 0 0 0 0 0 1
VERTEX_SE3:QUAT 1 1 0 0 0 0 0.7071067811865476 0.7071067811865476
EDGE_SE3:QUAT 0 1 1 0 0 0 0 0.7071067811865476 0.7071067811865476 1 0 0 0 0 0 2 0 0 0 0 3 0 0 0 4 0 0 5 0 6
FIX 0
"""


def test_parse_2d():
    graph = parse_g2o_lines(G2O_2D.splitlines())
    assert graph.dim == 3
    assert sorted(graph.values) == [0, 1, 2]
    assert graph.values[2].equals(gtsam.Pose2(2.0, 0.0, 0.1), 1e-12)
    assert len(graph.factors) == 3
    assert len(graph.loop_closures) == 1
    odom = graph.factors[0]
    assert odom.is_odometry()
    assert np.allclose(odom.covariance, np.diag([1 / 400.0, 1 / 400.0, 1 / 40000.0]))


def test_parse_3d_reorders_information():
    graph = parse_g2o_lines(G2O_3D.splitlines())
    assert graph.dim == 6
    prior, edge = graph.factors
    assert isinstance(prior, PriorFactor) and prior.key == 0
    # g2o (t, r) diagonal 1..6 becomes gtsam (r, t)
    assert np.allclose(np.diag(edge.information), [4, 5, 6, 1, 2, 3])
    expected = gtsam.Pose3(gtsam.Rot3.Yaw(np.pi / 2), gtsam.Point3(1, 0, 0))
    assert edge.measured.equals(expected, 1e-9)
    assert graph.values[1].equals(expected, 1e-9)


def test_format_then_parse_is_lossless():
    graph = parse_g2o_lines(G2O_3D.splitlines())
    again = parse_g2o_lines(format_g2o(graph.values, graph.factors).splitlines())
    assert np.allclose(again.factors[1].information, graph.factors[1].information)
    assert again.factors[1].measured.equals(graph.factors[1].measured, 1e-12)
    assert isinstance(again.factors[0], PriorFactor)


@pytest.mark.parametrize("line", [
    "VERTEX_SE2 0 1.0 2.0",
    "VERTEX_SE2 x 1.0 2.0 0.0",
    "EDGE_SE2 0 1 1.0 0.0 0.0 1 0 0 1 0",
    "EDGE_SE2 0 1 1.0 0.0 0.0 -1 0 0 1 0 1",
])
def test_malformed_records_raise(line):
    text = "VERTEX_SE2 0 0 0 0\nVERTEX_SE2 1 1 0 0\n" + line + "\n"
    with pytest.raises(G2oFormatError) as info:
        parse_g2o_lines(text.splitlines(), path="bad.g2o")
    assert info.value.line_no == 3
    assert "bad.g2o:3" in str(info.value)


def test_mixed_dimensions_raise():
    with pytest.raises(G2oFormatError):
        parse_g2o_lines(["VERTEX_SE2 0 0 0 0", "VERTEX_SE3:QUAT 1 0 0 0 0 0 0 1"])


def test_unknown_records_are_skipped(caplog):
    graph = parse_g2o_lines(["VERTEX_SE2 0 0 0 0", "VERTEX_XY 5 1 2", "VERTEX_XY 6 1 2"])
    assert list(graph.values) == [0]
    assert caplog.text.count("VERTEX_XY") == 1


def test_round_trip_without_loop_closures(tmp_path):
    gt = square_ground_truth()
    path = tmp_path / "odom.g2o"
    write_g2o(str(path), gt, odometry_factors(gt))
    graph = load_g2o(str(path))
    assert graph.loop_closures == []
    solver = RobustSolver()
    solver.update(graph.factors, graph.values)
    assert max_translation_error(solver.estimate, gt) < 1e-6
    for k, pose in gt.items():
        assert solver.estimate.atPose2(k).equals(pose, 1e-6)


def test_write_and_load_scenario(tmp_path):
    gt, factors = square_scenario()
    path = tmp_path / "square.g2o"
    write_g2o(str(path), gt, factors)
    graph = load_g2o(str(path))
    assert len(graph.loop_closures) == 2
    assert [(f.key1, f.key2) for f in graph.loop_closures] == [(19, 0), (17, 2)]
