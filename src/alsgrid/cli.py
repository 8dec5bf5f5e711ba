import argparse
import logging
import sys
from typing import List, Optional

from alsgrid.exceptions import AlsGridError
from alsgrid.pipeline import PipelineConfig, run_pipeline_from_file
from alsgrid.raster.engine import EngineConfig

def setup_logging(level: int = logging.INFO) -> None:
    """
    Configures the standard logging format and level for the command-line interface.

    Args:
        level (int): The logging threshold level.
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

def build_parser() -> argparse.ArgumentParser:
    """
    Declares the command-line surface.
    """
    parser = argparse.ArgumentParser(
        prog="alsgrid",
        description="Derive terrain, surface and canopy height grids from ALS point clouds"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log debug details (grid shapes, worker counts)."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run",
        help="Runs the DTM/DSM/CHM pipeline on a LAS/LAZ file and writes GeoTIFFs."
    )
    run_parser.add_argument("input", help="Input .las or .laz file.")
    run_parser.add_argument("output_dir", help="Directory receiving the GeoTIFF products.")
    run_parser.add_argument(
        "--crs",
        default=None,
        help="CRS to assign when the file has none (e.g. EPSG:2154)."
    )
    run_parser.add_argument("--resolution", type=float, default=1.0, help="Cell size in CRS units.")
    run_parser.add_argument("--ground-class", type=int, default=2, help="Classification code of ground returns.")
    run_parser.add_argument(
        "--exclude-class",
        type=int,
        nargs="*",
        default=[],
        help="Classification codes dropped before processing (e.g. 22 23 for overlap)."
    )
    run_parser.add_argument(
        "--max-elevation",
        type=float,
        default=None,
        help="Points above this elevation are treated as outliers for the DSM."
    )
    run_parser.add_argument("--dtm-method", choices=["idw", "tin"], default="idw")
    run_parser.add_argument("--k", type=int, default=10, help="IDW neighbour count.")
    run_parser.add_argument("--power", type=float, default=2.0, help="IDW distance exponent.")
    run_parser.add_argument(
        "--rmax",
        type=float,
        default=50.0,
        help="IDW search radius. 0 means unbounded."
    )
    run_parser.add_argument("--dsm-method", choices=["none", "idw", "tin"], default="none")
    run_parser.add_argument(
        "--canopy-aggregation",
        choices=["max", "first-return-max"],
        default="max"
    )
    run_parser.add_argument(
        "--terrain-metrics",
        action="store_true",
        help="Also write slope, aspect and hillshade of the DTM."
    )
    run_parser.add_argument("--workers", type=int, default=None, help="Maximum worker threads.")
    run_parser.add_argument("--cpu-fraction", type=float, default=0.8, help="Share of logical CPUs to use.")
    return parser

def _method_options(name: str, args: argparse.Namespace) -> dict:
    if name == "idw":
        return {'name': 'idw', 'k': args.k, 'power': args.power, 'rmax': args.rmax or None}
    return {'name': name}

def run(args: argparse.Namespace) -> int:
    """
    Executes the pipeline for parsed arguments and returns the process exit code.
    """
    try:
        config = PipelineConfig.from_dict({
            'resolution': args.resolution,
            'ground_class_code': args.ground_class,
            'excluded_overlap_classes': tuple(args.exclude_class),
            'elevation_outlier_threshold': args.max_elevation,
            'dtm_method': _method_options(args.dtm_method, args),
            'dsm_method': None if args.dsm_method == "none" else _method_options(args.dsm_method, args),
            'canopy_aggregation': args.canopy_aggregation,
            'terrain_metrics': args.terrain_metrics
        })
        engine = EngineConfig(max_workers=args.workers, cpu_fraction=args.cpu_fraction)
    except ValueError as e:
        logging.error(f"Invalid configuration: {e}")
        return 1

    try:
        written = run_pipeline_from_file(
            args.input,
            args.output_dir,
            config=config,
            crs=args.crs,
            engine=engine
        )
    except (AlsGridError, IOError) as e:
        logging.error(f"Pipeline failed: {e}")
        return 1

    for name, path in written.items():
        logging.info(f"{name}: {path}")
    return 0

def main(argv: Optional[List[str]] = None) -> None:
    """
    Parses command-line arguments and routes execution to the appropriate subroutine.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    if args.command == "run":
        sys.exit(run(args))

if __name__ == "__main__":
    main()
