#!/usr/bin/env python3
"""
Command line interface for the gene set testing pipeline.
"""

import argparse
import logging
import sys
from pathlib import Path

import tomli
from tomli_w import dump

from setsig.pipeline import SetEnrichmentPipeline
from setsig.utils import ensure_dir, setup_logging


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Cluster gene sets and run CAMERA-PR gene set tests"
    )

    # Required arguments
    parser.add_argument(
        "config_file",
        type=str,
        help="Path to TOML configuration file"
    )

    # Input file overrides
    input_group = parser.add_argument_group("Input file overrides")
    input_group.add_argument(
        "--statistics",
        type=str,
        help="Override statistic matrix file path"
    )
    input_group.add_argument(
        "--gene-sets",
        type=str,
        help="Override GMT gene set file path"
    )

    # Output configuration overrides
    output_group = parser.add_argument_group("Output configuration overrides")
    output_group.add_argument(
        "--output-dir",
        type=str,
        help="Override output directory"
    )
    output_group.add_argument(
        "--plots",
        action="store_true",
        help="Save result plots"
    )

    # Analysis parameter overrides
    analysis_group = parser.add_argument_group("Analysis parameter overrides")
    analysis_group.add_argument(
        "--use-ranks",
        action="store_true",
        help="Use the rank-based test instead of the parametric test"
    )
    analysis_group.add_argument(
        "--inter-gene-cor",
        type=float,
        help="Override the inter-gene correlation applied to every set"
    )
    analysis_group.add_argument(
        "--adjust-globally",
        action="store_true",
        help="Adjust p-values across all contrasts together"
    )
    analysis_group.add_argument(
        "--no-sort",
        action="store_true",
        help="Keep results in gene set order instead of sorting by p-value"
    )

    # Clustering parameter overrides
    cluster_group = parser.add_argument_group("Clustering parameter overrides")
    cluster_group.add_argument(
        "--cluster",
        action="store_true",
        help="Cluster similar gene sets and test one set per cluster"
    )
    cluster_group.add_argument(
        "--similarity",
        type=str,
        choices=["jaccard", "overlap", "otsuka"],
        help="Override similarity coefficient"
    )
    cluster_group.add_argument(
        "--cutoff",
        type=float,
        help="Override similarity cutoff"
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )

    return parser.parse_args(argv)


def update_config(config: dict, args: argparse.Namespace):
    """Update configuration with command line overrides."""
    for section in ('input', 'output', 'analysis', 'clustering'):
        config.setdefault(section, {})

    # Input file overrides
    if args.statistics:
        config['input']['statistic_file'] = args.statistics
    if args.gene_sets:
        config['input']['gene_sets_file'] = args.gene_sets

    # Output configuration overrides
    if args.output_dir:
        config['output']['output_dir'] = args.output_dir
    if args.plots:
        config['output']['plots'] = True

    # Analysis parameter overrides
    if args.use_ranks:
        config['analysis']['use_ranks'] = True
    if args.inter_gene_cor is not None:
        config['analysis']['inter_gene_cor'] = args.inter_gene_cor
    if args.adjust_globally:
        config['analysis']['adjust_globally'] = True
    if args.no_sort:
        config['analysis']['sort'] = False

    # Clustering parameter overrides
    if args.cluster:
        config['clustering']['enabled'] = True
    if args.similarity:
        config['clustering']['type'] = args.similarity
    if args.cutoff is not None:
        config['clustering']['cutoff'] = args.cutoff

    return config


def main(argv=None):
    """Main entry point for the CLI."""
    args = parse_args(argv)

    # Load and validate config file
    try:
        with open(args.config_file, 'rb') as f:
            config = tomli.load(f)
    except Exception as e:
        print(f"Error loading configuration file: {str(e)}")
        sys.exit(1)

    # Update config with command line overrides
    config = update_config(config, args)

    # Set up logging first, before any pipeline operations
    output_dir = ensure_dir(Path(config['output'].get('output_dir', config['output'].get('directory', 'results'))))
    setup_logging(output_dir / 'logs', level=args.log_level)

    logging.info("Starting gene set testing pipeline")
    logging.info(f"Using configuration file: {args.config_file}")

    # The effective configuration is what the pipeline runs from
    effective_config = output_dir / 'pipeline_config.toml'
    with open(effective_config, 'wb') as f:
        dump(config, f)

    try:
        pipeline = SetEnrichmentPipeline(effective_config)
        pipeline.run()
        logging.info("Pipeline execution completed successfully")
    except Exception as e:
        logging.error(f"Pipeline execution failed: {str(e)}")
        sys.exit(1)

if __name__ == "__main__":
    main()
