#!/usr/bin/env python3
"""
Command line interface for the differential expression and enrichment pipeline.
"""

import argparse
import logging
import sys
from pathlib import Path

import tomli
from tomli_w import dump

from .pipeline import DifferentialEnrichmentPipeline
from .utils import setup_logging


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run differential expression and gene set enrichment analysis"
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
        "--counts",
        type=str,
        help="Override count matrix file path"
    )
    input_group.add_argument(
        "--sample-sheet",
        type=str,
        help="Override sample sheet file path"
    )
    input_group.add_argument(
        "--gene-sets",
        type=str,
        help="Override GMT gene set file path"
    )
    input_group.add_argument(
        "--id-mapping",
        type=str,
        help="Override gene identifier mapping file path"
    )

    # Output configuration overrides
    output_group = parser.add_argument_group("Output configuration overrides")
    output_group.add_argument(
        "--output-dir",
        type=str,
        help="Override output directory"
    )
    output_group.add_argument(
        "--save-intermediate",
        action="store_true",
        help="Save normalized counts and dispersion estimates"
    )

    # Analysis parameter overrides
    analysis_group = parser.add_argument_group("Analysis parameter overrides")
    analysis_group.add_argument(
        "--group-a",
        type=str,
        help="Override reference group label"
    )
    analysis_group.add_argument(
        "--group-b",
        type=str,
        help="Override comparison group label"
    )
    analysis_group.add_argument(
        "--num-threads",
        type=int,
        help="Override number of worker processes for permutation testing"
    )

    # Enrichment parameter overrides
    enrichment_group = parser.add_argument_group("Enrichment parameter overrides")
    enrichment_group.add_argument(
        "--no-enrichment",
        action="store_true",
        help="Disable gene set enrichment"
    )
    enrichment_group.add_argument(
        "--permutations",
        type=int,
        help="Override number of permutations per gene set"
    )
    enrichment_group.add_argument(
        "--seed",
        type=int,
        help="Override permutation random seed"
    )
    enrichment_group.add_argument(
        "--min-size",
        type=int,
        help="Override minimum matched gene set size"
    )
    enrichment_group.add_argument(
        "--max-size",
        type=int,
        help="Override maximum matched gene set size"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    return parser.parse_args(argv)


def update_config(config: dict, args: argparse.Namespace):
    """Update configuration with command line overrides."""
    for section in ('input', 'output', 'analysis', 'enrichment'):
        config.setdefault(section, {})

    # Input file overrides
    if args.counts:
        config['input']['counts_file'] = args.counts
    if args.sample_sheet:
        config['input']['sample_sheet'] = args.sample_sheet
    if args.gene_sets:
        config['input']['gene_sets_file'] = args.gene_sets
    if args.id_mapping:
        config['input']['id_mapping_file'] = args.id_mapping

    # Output configuration overrides
    if args.output_dir:
        config['output']['directory'] = args.output_dir
    if args.save_intermediate:
        config['output']['save_intermediate'] = True

    # Analysis parameter overrides
    if args.group_a:
        config['analysis']['group_a'] = args.group_a
    if args.group_b:
        config['analysis']['group_b'] = args.group_b
    if args.num_threads:
        config['analysis']['num_threads'] = args.num_threads

    # Enrichment parameter overrides
    if args.no_enrichment:
        config['enrichment']['run'] = False
    if args.permutations is not None:
        config['enrichment']['permutation_count'] = args.permutations
    if args.seed is not None:
        config['enrichment']['random_seed'] = args.seed
    if args.min_size is not None:
        config['enrichment']['min_size'] = args.min_size
    if args.max_size is not None:
        config['enrichment']['max_size'] = args.max_size

    return config


def main(argv=None):
    """Main entry point for the CLI."""
    args = parse_args(argv)

    # Load and validate config file
    try:
        with open(args.config_file, 'rb') as f:
            config = tomli.load(f)
    except (OSError, tomli.TOMLDecodeError) as e:
        print(f"Error loading configuration file: {str(e)}")
        sys.exit(1)

    config = update_config(config, args)

    # Logging goes up before the pipeline touches any input
    output_dir = Path(config['output'].get('directory', 'results'))
    setup_logging(output_dir / 'logs', level=logging.DEBUG if args.verbose else logging.INFO)

    logging.info("Starting differential expression and enrichment pipeline")
    logging.info(f"Using configuration file: {args.config_file}")

    # Save updated config to a temporary file
    temp_config_path = Path(args.config_file).parent / "temp_config.toml"
    with open(temp_config_path, 'wb') as f:
        dump(config, f)

    try:
        pipeline = DifferentialEnrichmentPipeline(str(temp_config_path))
        pipeline.run()
        logging.info("Pipeline execution completed successfully")
    except Exception as e:
        logging.error(f"Pipeline execution failed: {str(e)}")
        sys.exit(1)
    finally:
        temp_config_path.unlink()


if __name__ == "__main__":
    main()
