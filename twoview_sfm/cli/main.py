"""
Command-line interface for the two-view reconstruction pipeline.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from twoview_sfm.config import PipelineConfig
from twoview_sfm.errors import ReconstructionError
from twoview_sfm.io.export import write_results
from twoview_sfm.io.scene_io import save_scene_snapshot
from twoview_sfm.sfm.data_structures import Scene
from twoview_sfm.sfm.initializer import IntrinsicMode
from twoview_sfm.sfm.pipeline import run_from_files

logger = logging.getLogger("twoview_sfm")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Relative pose and sparse structure from two calibrated photographs "
            "(AC-RANSAC essential matrix + bundle adjustment)"
        )
    )
    parser.add_argument("-i", "--image1", type=str, required=True, help="Path to the first image")
    parser.add_argument("-j", "--image2", type=str, required=True, help="Path to the second image")
    parser.add_argument(
        "-k",
        "--intrinsics",
        type=str,
        required=True,
        help="Path to a text file holding the 3x3 intrinsic matrix K (row-major)",
    )
    parser.add_argument(
        "-o",
        "--output-dir",
        type=str,
        default="output",
        help="Output directory for result and snapshot files (default: output)",
    )
    parser.add_argument(
        "-p",
        "--prefix",
        type=str,
        default="pair",
        help="Prefix appended to every output file name (default: pair)",
    )
    parser.add_argument(
        "--intrinsic-mode",
        type=str,
        default=IntrinsicMode.SHARED.value,
        choices=[mode.value for mode in IntrinsicMode],
        help="How the two views share intrinsics (default: shared)",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=256,
        help="Maximum number of robust estimation trials (default: 256)",
    )
    parser.add_argument(
        "--ratio",
        type=float,
        default=0.8,
        help="Nearest neighbour distance ratio for matching (default: 0.8)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed of the robust estimator, for reproducible runs",
    )
    parser.add_argument(
        "--skip-ba",
        action="store_true",
        help="Skip bundle adjustment (export raw triangulated poses/points)",
    )
    parser.add_argument(
        "--visualize",
        action="store_true",
        help="Generate an HTML visualization of the refined reconstruction",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    config = PipelineConfig()
    config.matcher.ratio = args.ratio
    config.estimator.max_iterations = args.max_iterations
    config.estimator.seed = args.seed
    config.scene.intrinsic_mode = IntrinsicMode(args.intrinsic_mode)
    config.run_bundle_adjustment = not args.skip_ba
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Usage:
        twoview-sfm -i left.jpg -j right.jpg -k K.txt -o out/ -p scene01

    Returns:
        0 on success, the failing error class' exit code otherwise.
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(name)s] %(message)s",
    )

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    snapshot_names = {
        "start": f"EssentialGeometry_start_{args.prefix}",
        "refined": f"EssentialGeometry_refined_{args.prefix}",
    }

    def save_snapshot(stage: str, scene: Scene) -> None:
        save_scene_snapshot(output_dir, snapshot_names[stage], scene)

    try:
        result = run_from_files(
            args.image1,
            args.image2,
            args.intrinsics,
            config=config_from_args(args),
            snapshot_hook=save_snapshot,
        )
    except ReconstructionError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return e.exit_code

    export = result.export
    logger.info("Rotation | translation of camera 2 in camera 1's frame:\n%s\n%s",
                export.rotation, export.translation)
    write_results(export, output_dir, args.prefix)

    if args.visualize:
        from twoview_sfm.viz.plotly_viz import plot_two_view_scene

        fig = plot_two_view_scene(result.scene)
        viz_path = output_dir / f"reconstruction_{args.prefix}.html"
        fig.write_html(str(viz_path))
        logger.info("Visualization saved to %s", viz_path)

    logger.info("Pipeline completed successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())
