"""g2o pose-graph reader/writer (2D SE2 and 3D SE3:QUAT records)."""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence
import logging

import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from .geometry import is_pose2, pose_from, rot3_to_quat_wxyz, translation_vector
from .models import (
    BetweenFactor, Factor, PriorFactor, Quaternion, Translation,
    matrix_to_upper_triangle, upper_triangle_to_matrix,
)
from .noise import information_to_covariance

logger = logging.getLogger("robust_pgo.loader")

VERTEX_SE2 = "VERTEX_SE2"
EDGE_SE2 = "EDGE_SE2"
VERTEX_SE3 = "VERTEX_SE3:QUAT"
EDGE_SE3 = "EDGE_SE3:QUAT"
FIX = "FIX"

# g2o orders the 6-dof tangent as (translation, rotation); gtsam as (rotation, translation).
_SE3_PERM = np.array([3, 4, 5, 0, 1, 2])


class G2oFormatError(ValueError):
    """Malformed g2o record."""

    def __init__(self, message: str, path: Optional[str] = None, line_no: Optional[int] = None):
        self.path = path
        self.line_no = line_no
        where = f"{path or '<input>'}:{line_no}" if line_no is not None else (path or "<input>")
        super().__init__(f"{where}: {message}")


@dataclass
class LoaderConfig:
    fix_sigma: float = 1e-4          # sigma of the prior created for FIX lines
    skip_unknown: bool = True        # warn on unknown tags instead of failing


@dataclass
class G2oGraph:
    dim: Optional[int]  # 3 (SE2) or 6 (SE3); None for an empty file
    values: Dict[int, object] = field(default_factory=dict)
    factors: List[Factor] = field(default_factory=list)

    @property
    def loop_closures(self) -> List[BetweenFactor]:
        return [f for f in self.factors if isinstance(f, BetweenFactor) and not f.is_odometry()]


def _floats(tokens: Sequence[str], count: int, tag: str, path, line_no) -> List[float]:
    if len(tokens) != count:
        raise G2oFormatError(f"{tag} expects {count} numbers, got {len(tokens)}", path, line_no)
    try:
        return [float(t) for t in tokens]
    except ValueError as e:
        raise G2oFormatError(f"{tag}: {e}", path, line_no) from e


def _key(token: str, tag: str, path, line_no) -> int:
    try:
        return int(token)
    except ValueError as e:
        raise G2oFormatError(f"{tag}: invalid id {token!r}", path, line_no) from e


def _pose3(nums: Sequence[float]):
    x, y, z, qx, qy, qz, qw = nums
    return pose_from(Quaternion(qw, qx, qy, qz), Translation(x, y, z))


def _edge_covariance(info: np.ndarray, tag: str, path, line_no) -> np.ndarray:
    try:
        return information_to_covariance(info)
    except ValueError as e:
        raise G2oFormatError(f"{tag}: {e}", path, line_no) from e


def parse_g2o_lines(lines: Iterable[str], path: Optional[str] = None,
                    cfg: Optional[LoaderConfig] = None) -> G2oGraph:
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot read g2o")
    cfg = cfg or LoaderConfig()
    graph = G2oGraph(dim=None)
    fixed: List[tuple] = []
    unknown = set()

    def _set_dim(d: int, tag: str, line_no: int) -> None:
        if graph.dim is None:
            graph.dim = d
        elif graph.dim != d:
            raise G2oFormatError(f"{tag} mixes 2D and 3D records", path, line_no)

    for line_no, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        tokens = line.split()
        tag = tokens[0]
        if tag == VERTEX_SE2:
            _set_dim(3, tag, line_no)
            if len(tokens) < 2:
                raise G2oFormatError(f"{tag} missing id", path, line_no)
            key = _key(tokens[1], tag, path, line_no)
            x, y, th = _floats(tokens[2:], 3, tag, path, line_no)
            graph.values[key] = gtsam.Pose2(x, y, th)
        elif tag == VERTEX_SE3:
            _set_dim(6, tag, line_no)
            if len(tokens) < 2:
                raise G2oFormatError(f"{tag} missing id", path, line_no)
            key = _key(tokens[1], tag, path, line_no)
            graph.values[key] = _pose3(_floats(tokens[2:], 7, tag, path, line_no))
        elif tag == EDGE_SE2:
            _set_dim(3, tag, line_no)
            if len(tokens) < 3:
                raise G2oFormatError(f"{tag} missing ids", path, line_no)
            k1, k2 = _key(tokens[1], tag, path, line_no), _key(tokens[2], tag, path, line_no)
            nums = _floats(tokens[3:], 3 + 6, tag, path, line_no)
            info = upper_triangle_to_matrix(nums[3:], 3)
            graph.factors.append(BetweenFactor(
                key1=k1, key2=k2, measured=gtsam.Pose2(*nums[:3]),
                covariance=_edge_covariance(info, tag, path, line_no), information=info))
        elif tag == EDGE_SE3:
            _set_dim(6, tag, line_no)
            if len(tokens) < 3:
                raise G2oFormatError(f"{tag} missing ids", path, line_no)
            k1, k2 = _key(tokens[1], tag, path, line_no), _key(tokens[2], tag, path, line_no)
            nums = _floats(tokens[3:], 7 + 21, tag, path, line_no)
            info_g2o = upper_triangle_to_matrix(nums[7:], 6)
            info = info_g2o[np.ix_(_SE3_PERM, _SE3_PERM)]
            graph.factors.append(BetweenFactor(
                key1=k1, key2=k2, measured=_pose3(nums[:7]),
                covariance=_edge_covariance(info, tag, path, line_no), information=info))
        elif tag == FIX:
            for tok in tokens[1:]:
                fixed.append((_key(tok, tag, path, line_no), line_no))
        else:
            if not cfg.skip_unknown:
                raise G2oFormatError(f"unknown record {tag!r}", path, line_no)
            if tag not in unknown:
                logger.warning("Skipping unsupported g2o record %s", tag)
                unknown.add(tag)

    for key, line_no in fixed:
        if key not in graph.values:
            raise G2oFormatError(f"FIX references unknown vertex {key}", path, line_no)
        d = graph.dim
        graph.factors.insert(0, PriorFactor(key=key, pose=graph.values[key],
                                            covariance=np.eye(d) * cfg.fix_sigma ** 2))
    logger.info("Loaded g2o: %d vertices, %d factors (%d loop closures)",
                len(graph.values), len(graph.factors), len(graph.loop_closures))
    return graph


def load_g2o(path: str, cfg: Optional[LoaderConfig] = None) -> G2oGraph:
    with open(path, "r", encoding="utf-8") as f:
        return parse_g2o_lines(f, path=path, cfg=cfg)


def _fmt(values: Iterable[float]) -> str:
    return " ".join(repr(float(v)) for v in values)


def _pose_fields(pose) -> List[float]:
    if is_pose2(pose):
        return [pose.x(), pose.y(), pose.theta()]
    w, x, y, z = rot3_to_quat_wxyz(pose.rotation())
    return list(translation_vector(pose)) + [x, y, z, w]


def _information(f: BetweenFactor) -> np.ndarray:
    if f.information is not None:
        return np.asarray(f.information, dtype=float)
    return np.linalg.inv(np.asarray(f.covariance, dtype=float))


def format_g2o(values: Mapping[int, object],
               factors: Iterable[Factor],
               fixed_keys: Iterable[int] = ()) -> str:
    """Serialize vertices (sorted by key), between factors (given order) and FIX lines.

    Prior factors are written as FIX lines on their key; their covariance is
    not representable in g2o.
    """
    lines: List[str] = []
    for key in sorted(values):
        pose = values[key]
        tag = VERTEX_SE2 if is_pose2(pose) else VERTEX_SE3
        lines.append(f"{tag} {int(key)} {_fmt(_pose_fields(pose))}")
    fixes = [int(k) for k in fixed_keys]
    for f in factors:
        if isinstance(f, PriorFactor):
            fixes.append(int(f.key))
            continue
        info = _information(f)
        if is_pose2(f.measured):
            tag = EDGE_SE2
        else:
            tag = EDGE_SE3
            inv = np.argsort(_SE3_PERM)
            info = info[np.ix_(inv, inv)]
        lines.append(f"{tag} {int(f.key1)} {int(f.key2)} {_fmt(_pose_fields(f.measured))} "
                     f"{_fmt(matrix_to_upper_triangle(info))}")
    seen = set()
    for key in fixes:
        if key not in seen:
            lines.append(f"{FIX} {key}")
            seen.add(key)
    return "\n".join(lines) + "\n"


def write_g2o(path: str, values: Mapping[int, object], factors: Iterable[Factor],
              fixed_keys: Iterable[int] = ()) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(format_g2o(values, factors, fixed_keys))
