"""Solver configuration and parsing of the driver's mode tokens.

Unsupported tokens never abort a run: they are logged as warnings and a
documented default is substituted (heuristic max-clique method; PCM and GNC
keep their last valid setting).
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional
import logging
import math
import sys

logger = logging.getLogger("robust_pgo.params")

# Thresholds at or above this value switch the corresponding check off.
# The original driver used the largest double for "soft deactivation".
DISABLED = math.inf


def is_disabled(threshold: Optional[float]) -> bool:
    if threshold is None:
        return True
    threshold = float(threshold)
    return math.isinf(threshold) or threshold >= sys.float_info.max


class PcmMode(Enum):
    DISABLED = "disabled"
    SIMPLE = "simple"
    ORIGINAL = "original"


class GncMode(Enum):
    DISABLED = "disabled"
    ENABLED = "enabled"


class MaxCliqueMethod(Enum):
    EXACT = "exact"
    HEURISTIC = "heuristic"
    AFFINITY = "affinity"


class Verbosity(Enum):
    QUIET = "quiet"
    VERBOSE = "verbose"


_PCM_TOKENS = {
    "nopcm": PcmMode.DISABLED,
    "none": PcmMode.DISABLED,
    "disabled": PcmMode.DISABLED,
    "pcm2dsimp": PcmMode.SIMPLE,
    "pcm3dsimp": PcmMode.SIMPLE,
    "pcmsimple": PcmMode.SIMPLE,
    "simple": PcmMode.SIMPLE,
    "pcm2dorig": PcmMode.ORIGINAL,
    "pcm3dorig": PcmMode.ORIGINAL,
    "pcmorig": PcmMode.ORIGINAL,
    "original": PcmMode.ORIGINAL,
}

_GNC_TOKENS = {
    "nognc": GncMode.DISABLED,
    "none": GncMode.DISABLED,
    "disabled": GncMode.DISABLED,
    "gnc": GncMode.ENABLED,
    "enabled": GncMode.ENABLED,
}

_CLIQUE_TOKENS = {
    "pmc_exact": MaxCliqueMethod.EXACT,
    "exact": MaxCliqueMethod.EXACT,
    "pmc_heu": MaxCliqueMethod.HEURISTIC,
    "heuristic": MaxCliqueMethod.HEURISTIC,
    "clipper": MaxCliqueMethod.AFFINITY,
    "affinity": MaxCliqueMethod.AFFINITY,
}

_VERBOSITY_TOKENS = {
    "v": Verbosity.VERBOSE,
    "verbose": Verbosity.VERBOSE,
    "q": Verbosity.QUIET,
    "quiet": Verbosity.QUIET,
}


def _lookup(table, token):
    if isinstance(token, Enum):
        return token
    if token is None:
        return None
    return table.get(str(token).strip().lower())


def parse_pcm_mode(token) -> Optional[PcmMode]:
    mode = _lookup(_PCM_TOKENS, token)
    if mode is None:
        logger.warning("Unsupported PCM option %r (options are: NoPCM, PCM2dSimp, PCM2dOrig)", token)
    return mode


def parse_gnc_mode(token) -> Optional[GncMode]:
    mode = _lookup(_GNC_TOKENS, token)
    if mode is None:
        logger.warning("Unsupported GNC option %r (options are: NoGNC, GNC)", token)
    return mode


def parse_max_clique_method(token) -> MaxCliqueMethod:
    method = _lookup(_CLIQUE_TOKENS, token)
    if method is None:
        logger.warning("Unsupported Max Clique Method %r (options are: pmc_exact, pmc_heu, clipper)", token)
        method = MaxCliqueMethod.HEURISTIC
    logger.info("Max Clique Solver: %s", method.value)
    return method


def parse_verbosity(token) -> Verbosity:
    if token is None or token == "":
        return Verbosity.QUIET
    verbosity = _lookup(_VERBOSITY_TOKENS, token)
    if verbosity is None:
        logger.warning("Unsupported verbosity %r; using quiet", token)
        verbosity = Verbosity.QUIET
    return verbosity


@dataclass
class RobustSolverParams:
    """Thresholds and mode flags for one solver run.

    The solver takes a copy at construction; mutating the instance afterwards
    has no effect on a running solver.

    "original" PCM uses two Mahalanobis caps with distinct roles:
      pcm_odom_threshold - loop closure vs. the odometry-implied transform
      pcm_lc_threshold   - loop closure vs. loop closure
    The legacy driver feeds them from its (translation, rotation) argument
    pair, in that order; see ``set_pcm_params``.
    """
    pcm_mode: PcmMode = PcmMode.DISABLED
    pcm_trans_threshold: float = DISABLED
    pcm_rot_threshold: float = DISABLED
    pcm_odom_threshold: float = DISABLED
    pcm_lc_threshold: float = DISABLED
    gnc_mode: GncMode = GncMode.DISABLED
    gnc_barc_sq: float = DISABLED
    gnc_max_iterations: int = 100
    gnc_mu_step: float = 1.4
    gnc_weight_tol: float = 1e-4
    max_clique_method: MaxCliqueMethod = MaxCliqueMethod.HEURISTIC
    exact_time_limit: Optional[float] = None
    lm_max_iterations: int = 100
    output_folder: Optional[str] = None
    verbosity: Verbosity = Verbosity.QUIET

    # --- setters named after the original driver's parameter calls ---
    def set_pcm_simple_params(self, trans_threshold: float, rot_threshold: float,
                              verbosity: Verbosity = Verbosity.QUIET) -> "RobustSolverParams":
        self.pcm_mode = PcmMode.SIMPLE
        self.pcm_trans_threshold = float(trans_threshold)
        self.pcm_rot_threshold = float(rot_threshold)
        self.verbosity = verbosity
        return self

    def set_pcm_params(self, odom_threshold: float, lc_threshold: float,
                       verbosity: Verbosity = Verbosity.QUIET) -> "RobustSolverParams":
        """Original PCM. NOTE: the legacy CLI passes (pcm_t, pcm_R) here, so the
        translation slot becomes the odometry cap and the rotation slot the
        loop-closure cap. The equivalence is a compatibility shim only."""
        self.pcm_mode = PcmMode.ORIGINAL
        self.pcm_odom_threshold = float(odom_threshold)
        self.pcm_lc_threshold = float(lc_threshold)
        self.verbosity = verbosity
        return self

    def set_no_pcm(self, verbosity: Verbosity = Verbosity.QUIET) -> "RobustSolverParams":
        self.pcm_mode = PcmMode.DISABLED
        self.pcm_trans_threshold = DISABLED
        self.pcm_rot_threshold = DISABLED
        self.pcm_odom_threshold = DISABLED
        self.pcm_lc_threshold = DISABLED
        self.verbosity = verbosity
        return self

    def set_gnc_inlier_cost_threshold(self, barc_sq: float) -> "RobustSolverParams":
        self.gnc_barc_sq = float(barc_sq)
        self.gnc_mode = GncMode.DISABLED if is_disabled(barc_sq) else GncMode.ENABLED
        return self

    def set_max_clique_method(self, method) -> "RobustSolverParams":
        self.max_clique_method = parse_max_clique_method(method)
        return self

    def log_output(self, folder: Optional[str]) -> "RobustSolverParams":
        self.output_folder = folder or None
        return self

    # --- derived flags ---
    @property
    def pcm_enabled(self) -> bool:
        return self.pcm_mode is not PcmMode.DISABLED

    @property
    def gnc_enabled(self) -> bool:
        return self.gnc_mode is GncMode.ENABLED and not is_disabled(self.gnc_barc_sq)

    @property
    def verbose(self) -> bool:
        return self.verbosity is Verbosity.VERBOSE

    def describe(self) -> str:
        parts = []
        if self.pcm_mode is PcmMode.SIMPLE:
            parts.append("PCM Simple")
        elif self.pcm_mode is PcmMode.ORIGINAL:
            parts.append("PCM Orig")
        if self.gnc_enabled:
            parts.append("GNC")
        return " + ".join(parts) or "NONE"


def params_from_tokens(pcm: str,
                       gnc: str,
                       pcm_t: float,
                       pcm_r: float,
                       gnc_barc_sq: float,
                       max_clique_method: str = "pmc_heu",
                       output_folder: Optional[str] = None,
                       verbosity: Optional[str] = None,
                       base: Optional[RobustSolverParams] = None) -> RobustSolverParams:
    """Build params from the driver's positional tokens.

    Mirrors the original comparison tool: NoPCM and NoGNC are soft
    deactivations through infinite thresholds. An unsupported PCM or GNC token
    leaves that part of ``base`` (default: disabled) untouched.
    """
    params = base if base is not None else RobustSolverParams()
    verb = parse_verbosity(verbosity)
    params.verbosity = verb
    params.log_output(output_folder)
    params.set_max_clique_method(max_clique_method)

    pcm_mode = parse_pcm_mode(pcm)
    if pcm_mode is PcmMode.DISABLED:
        params.set_no_pcm(verb)
    elif pcm_mode is PcmMode.SIMPLE:
        params.set_pcm_simple_params(pcm_t, pcm_r, verb)
    elif pcm_mode is PcmMode.ORIGINAL:
        params.set_pcm_params(pcm_t, pcm_r, verb)

    gnc_mode = parse_gnc_mode(gnc)
    if gnc_mode is GncMode.DISABLED:
        params.set_gnc_inlier_cost_threshold(DISABLED)
    elif gnc_mode is GncMode.ENABLED:
        params.set_gnc_inlier_cost_threshold(gnc_barc_sq)

    logger.info("Options: %s", params.describe())
    return params
