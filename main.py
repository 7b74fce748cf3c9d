import argparse
import csv
import json
import logging
import os
from typing import Dict, List, Optional

from robust_pgo.geometry import is_pose2, rot3_to_quat_wxyz, translation_vector
from robust_pgo.loader import G2oFormatError, load_g2o
from robust_pgo.params import params_from_tokens
from robust_pgo.solver import RobustSolver
from robust_pgo_common.kpi_logging import KPILogger
from robust_pgo_common.metrics import ate, max_translation_error, translation_errors
from robust_pgo_common.viz import plot_pose_graph_2d

logger = logging.getLogger("robust_pgo.main")


def parse_args(argv: Optional[List[str]] = None):
    ap = argparse.ArgumentParser(description="Robust pose-graph optimisation of a g2o file (PCM / GNC / max-clique).")
    ap.add_argument("--g2o", required=True, help="Path to input .g2o pose graph")
    ap.add_argument("--pcm", default="NoPCM", help="Consistency check: NoPCM, PCM2dSimp/PCMSimple, PCM2dOrig/PCMOrig")
    ap.add_argument("--gnc", default="NoGNC", help="Robust reweighting: NoGNC or GNC")
    ap.add_argument("--pcm-t", type=float, default=1.0,
                    help="Simple PCM: translation cap [m]. Original PCM: odometry Mahalanobis cap")
    ap.add_argument("--pcm-r", type=float, default=0.5,
                    help="Simple PCM: rotation cap [rad]. Original PCM: loop-closure Mahalanobis cap")
    ap.add_argument("--gnc-barcsq", type=float, default=1.0, help="GNC inlier cost threshold (barcSq)")
    ap.add_argument("--max-clique-method", default="pmc_heu", help="pmc_exact, pmc_heu or clipper")
    ap.add_argument("--exact-time-limit", type=float, default=None,
                    help="Seconds before the exact max-clique search returns its best clique")
    ap.add_argument("--output", required=True, help="Directory to write outputs")
    ap.add_argument("--verbosity", default="", help="'v' for verbose solver progress")
    ap.add_argument("--log", default="INFO", help="Logging level")
    ap.add_argument("--kpi", action="store_true", help="Write structured KPI events to kpi_events.jsonl")
    ap.add_argument("--reference", default=None, help="Reference g2o (ground truth) for ATE in metrics.json")
    ap.add_argument("--plot", action="store_true", help="Export an XY plot of the optimized graph")
    return ap.parse_args(argv)


def ensure_dir(p):
    os.makedirs(p, exist_ok=True)


def export_trajectory_csv(poses: Dict[int, object], out_path: str) -> None:
    with open(out_path, "w", newline="", encoding="utf-8") as f:
        if poses and is_pose2(next(iter(poses.values()))):
            w = csv.writer(f)
            w.writerow(["key", "x", "y", "theta"])
            for k in sorted(poses):
                p = poses[k]
                w.writerow([k, p.x(), p.y(), p.theta()])
            return
        w = csv.writer(f)
        w.writerow(["key", "x", "y", "z", "qw", "qx", "qy", "qz"])
        for k in sorted(poses):
            p = poses[k]
            tx, ty, tz = translation_vector(p)
            qw, qx, qy, qz = rot3_to_quat_wxyz(p.rotation())
            w.writerow([k, tx, ty, tz, qw, qx, qy, qz])


def run(args) -> int:
    try:
        graph = load_g2o(args.g2o)
    except (OSError, G2oFormatError) as e:
        logger.error("Cannot read pose graph: %s", e)
        return 2

    out_dir = args.output
    ensure_dir(out_dir)
    params = params_from_tokens(args.pcm, args.gnc, args.pcm_t, args.pcm_r, args.gnc_barcsq,
                                max_clique_method=args.max_clique_method,
                                output_folder=out_dir,
                                verbosity=args.verbosity)
    params.exact_time_limit = args.exact_time_limit

    kpi = KPILogger(log_path=os.path.join(out_dir, "kpi_events.jsonl"), emit_to_logger=False) if args.kpi else None
    try:
        solver = RobustSolver(params, kpi=kpi)
        solver.update(graph.factors, graph.values)
        solver.save_data(out_dir)
    finally:
        if kpi:
            kpi.close()

    poses = solver.estimate_poses()
    export_trajectory_csv(poses, os.path.join(out_dir, "trajectory.csv"))
    solver.timer.log_summary(logger)
    logger.info("Loop closures: %d accepted, %d rejected (GNC converged=%s)",
                len(solver.accepted), len(solver.rejected), solver.gnc_converged)

    reference = None
    if args.reference:
        try:
            reference = load_g2o(args.reference).values
        except (OSError, G2oFormatError) as e:
            logger.error("Cannot read reference graph: %s", e)
            return 2
        metrics = ate(poses, reference)
        worst = max_translation_error(poses, reference)
        report = {
            "ate": metrics,
            "translation_error": {"max": worst, "per_key": translation_errors(poses, reference)},
        }
        with open(os.path.join(out_dir, "metrics.json"), "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2, sort_keys=True)
        logger.info("ATE RMSE: %s over %d poses (max unaligned translation error %s)",
                    metrics.get("rmse"), metrics.get("matches"), worst)

    if args.plot:
        accepted = [solver.store.endpoints(i) for i in sorted(solver.accepted)]
        rejected = [solver.store.endpoints(i) for i in sorted(solver.rejected)]
        plot_pose_graph_2d(poses, os.path.join(out_dir, "pose_graph.png"),
                           loop_closures=accepted, rejected=rejected, reference=reference)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=args.log.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    return run(args)


if __name__ == "__main__":
    raise SystemExit(main())
