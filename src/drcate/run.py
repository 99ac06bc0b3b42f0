"""
Run nuisance cross-fitting on a CSV dataset.

CLI: python -m src.drcate.run --config configs/nuisance_example.yaml \
        --data data/trial.csv --output data/pseudo_outcomes.csv [--debug] [--progress]

Writes the pseudo-outcome table (id, k, pseudo_outcome, shuffle_idx) and,
next to it, the outer fold assignment as ``<output stem>_folds.csv``.
"""

import argparse
from pathlib import Path

import pandas as pd

from src.drcate.config import load_config
from src.drcate.errors import DrCateError
from src.drcate.learn import learn_nuisance
from src.utils.logging import setup_logging


def main(argv: list[str] | None = None) -> int:
    """Main entry point for a cross-fitting run."""
    parser = argparse.ArgumentParser(description="Cross-fit nuisance models and CATE pseudo-outcomes")
    parser.add_argument("--config", required=True, help="Path to nuisance config YAML")
    parser.add_argument("--data", required=True, help="Input CSV with outcome, treatment and covariates")
    parser.add_argument("--output", required=True, help="Output CSV for the pseudo-outcome table")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--progress", action="store_true", help="Show a progress bar over outer folds")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    logger = setup_logging(
        level="DEBUG" if args.debug else "INFO",
        config=config.to_dict(),
        random_state=config.random_state,
    )
    logger.info("Starting cross-fitting run", extra={"config_path": args.config, "data_path": args.data})

    df = pd.read_csv(args.data)
    try:
        result = learn_nuisance(df, config, show_progress=args.progress)
    except DrCateError as e:
        logger.error(f"Cross-fitting run failed: {e}")
        return 1

    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    result.k_fold_assign_and_cate.to_csv(output_path, index=False)
    folds_path = output_path.with_name(f"{output_path.stem}_folds.csv")
    result.fold_assignments.to_csv(folds_path, index=False)

    logger.info(
        f"Wrote {len(result.k_fold_assign_and_cate)} pseudo-outcomes to {output_path}",
        extra={"output_path": str(output_path), "folds_path": str(folds_path)},
    )
    return 0


if __name__ == "__main__":
    import sys

    sys.exit(main())
