#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import argparse
import os
import sys
import time
import warnings
from pathlib import Path

warnings.filterwarnings('ignore')

from config import SessionConfig
from errors import RegistrationError
from face_registration import RegistrationSession
from logging_utils import setup_logging
from matching_analysis import AverageMatchingError


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Rigid 3D model registration (PCA pre-alignment + ICP)")
    parser.add_argument("--src", help="Source model (mesh or point cloud)")
    parser.add_argument("--dest", help="Destination model (mesh or point cloud)")
    parser.add_argument("--properties", help="key = value properties file")
    parser.add_argument("--steps", type=int, help="Number of ICP steps")
    parser.add_argument("--pca-first", action="store_true", default=None, help="Run PCA pre-alignment before ICP")
    parser.add_argument("--selection", help="Point selection filters, e.g. EVERY_SECOND|NO_EDGES")
    parser.add_argument("--stats", action="store_true", help="Run the average matching error analysis")
    parser.add_argument("--output-dir", default="./result", help="Directory for logs and results")
    parser.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--seed", type=int, help="Random seed")
    return parser.parse_args(argv)


def build_config(args) -> SessionConfig:
    config = SessionConfig.from_file(args.properties) if args.properties else SessionConfig()
    config.update(
        src=args.src,
        dest=args.dest,
        icp_steps=args.steps,
        pca_first=args.pca_first,
        selection=args.selection,
        seed=args.seed
    )
    if args.selection:
        config.pair_selection = args.selection
    config.validate()
    return config


def main(argv=None) -> int:
    args = parse_args(argv)

    output_dir = Path(args.output_dir)
    log_dir = output_dir / "logs"
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, f"registration_{time.strftime('%Y%m%d_%H%M%S')}.log")
    logger = setup_logging(
        log_level=args.log_level,
        log_file=log_file,
        enable_console=True
    )
    logger.info("Starting rigid registration - Log system started")

    try:
        config = build_config(args)
        session = RegistrationSession.from_config(config)

        if args.stats:
            analysis = AverageMatchingError.from_config(config)
            analysis.run(session.source, session.dest)
            paths = analysis.write_results(str(output_dir))
            logger.info("Output files:")
            for path in paths.values():
                logger.info(f"  {path}")
        else:
            summary = session.run(config.icp_steps, pca_first=config.pca_first)
            transform_path = session.save_transformation(str(output_dir / "transformation.txt"))
            model_path = session.save_source(str(output_dir / "registered_source.ply"))

            logger.info("=" * 60)
            logger.info("Final Result Summary")
            logger.info("=" * 60)
            logger.info(f"ICP steps: {summary['iterations']}")
            logger.info(f"Matching error: {summary['initial_error']:.8f} -> {summary['final_error']:.8f}")
            logger.info(f"Runtime: {summary['runtime']:.2f} s")
            logger.info("Output files:")
            logger.info(f"Transformation: {transform_path}")
            logger.info(f"Registered source: {model_path}")
    except RegistrationError as e:
        logger.error(f"Registration failed: {e}")
        return 1

    logger.info(f"Log file: {log_file}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
