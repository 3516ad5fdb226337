# File: scripts/cluster_trajectories.py

import argparse
import logging
import sys
from pathlib import Path

import pandas as pd

# Add src to path for imports
sys.path.append(str(Path(__file__).parent.parent / "src"))

from om_analysis.config import ClusteringConfig  # noqa: E402
from om_analysis.data.loader import load_clinical_table, load_patient_series  # noqa: E402
from om_analysis.models.selection import (  # noqa: E402
    consistent_variables,
    load_selection_results,
    selection_sign_matrix,
)
from om_analysis.pipeline import cluster_profiles, cluster_trajectories  # noqa: E402

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# --- Configuration ---
PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_ROOT = PROJECT_ROOT / "data"
RESULTS_DIR = PROJECT_ROOT / "results"
CACHE_DIR = DATA_ROOT / "processed" / "cache"


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Cluster patients by their oral mucositis severity trajectories."
    )
    parser.add_argument(
        "--symptoms-csv",
        type=Path,
        default=DATA_ROOT / "symptoms.csv",
        help="Patient-metadata table with id, timepoint and OM score columns.",
    )
    parser.add_argument(
        "--clinical-csv",
        type=Path,
        default=None,
        help="Optional clinical table (id, age, weight, height, sex) for cluster profiles.",
    )
    parser.add_argument("--output-dir", type=Path, default=RESULTS_DIR)
    parser.add_argument("--id-col", default="id")
    parser.add_argument("--time-col", default="timepoint")
    parser.add_argument("--score-col", default="om_score")
    parser.add_argument(
        "--seed", type=int, required=True, help="Seed for the gap-statistic reference samples."
    )
    parser.add_argument("--grid-step", type=float, default=1.0)
    parser.add_argument("--k-max", type=int, default=6)
    parser.add_argument("--n-references", type=int, default=50)
    parser.add_argument("--min-overlap", type=int, default=2)
    parser.add_argument(
        "--raw-distances",
        action="store_true",
        help="Use the plain Euclidean norm instead of the RMS difference over shared grid points.",
    )
    parser.add_argument(
        "--undefined-policy",
        choices=["mean", "raise"],
        default="mean",
        help="How to treat patient pairs that share too few grid points.",
    )
    parser.add_argument(
        "--cache-dir",
        type=Path,
        default=None,
        help=f"Memoize the gap statistic here (e.g. {CACHE_DIR}).",
    )
    parser.add_argument(
        "--force-recompute",
        action="store_true",
        help="Ignore any cached gap statistic and recompute it.",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Abort on the first invalid patient instead of rejecting it and continuing.",
    )
    parser.add_argument(
        "--selection-csv",
        type=Path,
        default=None,
        help="Optional per-cluster selection results (cluster, variable, coefficient).",
    )
    parser.add_argument(
        "--min-clusters",
        type=int,
        default=2,
        help="Clusters a variable must share a sign in to count as consistent.",
    )
    return parser.parse_args(argv)


def main(argv=None):
    """
    Main function to load the symptom table, cluster trajectories and save results.
    """
    args = parse_args(argv)

    config = ClusteringConfig(
        seed=args.seed,
        grid_step=args.grid_step,
        k_max=args.k_max,
        n_references=args.n_references,
        min_overlap=args.min_overlap,
        normalize=not args.raw_distances,
        undefined_policy=args.undefined_policy,
    )

    logger.info("Starting trajectory clustering...")
    args.output_dir.mkdir(parents=True, exist_ok=True)

    series, rejected = load_patient_series(
        args.symptoms_csv,
        id_col=args.id_col,
        time_col=args.time_col,
        score_col=args.score_col,
        errors="raise" if args.strict else "skip",
    )
    logger.info(f"Built series for {len(series)} patients.")

    if rejected:
        rejected_path = args.output_dir / "rejected_patients.csv"
        pd.Series(rejected, name="reason").rename_axis("patient_id").to_csv(rejected_path)
        logger.warning(f"{len(rejected)} rejected patient(s) listed in: {rejected_path}")

    result = cluster_trajectories(
        series,
        config,
        cache_dir=args.cache_dir,
        force_recompute=args.force_recompute,
    )

    assignments_path = args.output_dir / "cluster_assignments.csv"
    result.assignments.to_csv(assignments_path)
    logger.info(f"Cluster assignments saved to: {assignments_path}")

    gap_path = args.output_dir / "gap_statistic.csv"
    result.gap.to_frame().to_csv(gap_path, index=False)
    logger.info(f"Gap statistic table saved to: {gap_path}")

    interpolated_path = args.output_dir / "interpolated_scores.csv"
    result.interpolated.to_csv(interpolated_path)
    logger.info(f"Interpolated scores saved to: {interpolated_path}")

    if args.clinical_csv is not None:
        clinical = load_clinical_table(args.clinical_csv, id_col=args.id_col)
        profiles_path = args.output_dir / "cluster_profiles.csv"
        cluster_profiles(result.assignments, clinical).to_csv(profiles_path)
        logger.info(f"Cluster profiles saved to: {profiles_path}")

    if args.selection_csv is not None:
        signs = selection_sign_matrix(load_selection_results(args.selection_csv))
        signs_path = args.output_dir / "selection_signs.csv"
        signs.to_csv(signs_path)
        logger.info(f"Selection sign matrix saved to: {signs_path}")

        consistent_path = args.output_dir / "consistent_variables.csv"
        consistent_variables(signs, min_clusters=args.min_clusters).to_csv(consistent_path)
        logger.info(f"Consistently selected variables saved to: {consistent_path}")

    logger.info(f"Trajectory clustering complete: k={result.n_clusters}.")
    return result


if __name__ == "__main__":
    main()
