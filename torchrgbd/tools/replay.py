"""
Offline replay of a saved frame sequence.

A sequence is a directory of frame directories written by ``Frame.save``,
processed in name order. The estimated trajectory is written in TUM format
(``timestamp tx ty tz qx qy qz qw``) and can be plotted with matplotlib.

Usage:
    python -m torchrgbd.tools.replay SEQUENCE_DIR --output trajectory.txt
"""
import argparse
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
from tqdm import tqdm

from ..backend.se3 import RigidTransform, rotation_matrix_to_quaternion
from ..config import load_config, merge_config
from ..frontend.frame import Frame
from ..slam.rgbd_vo import RGBDVisualOdometry

logger = logging.getLogger(__name__)


def list_frame_dirs(sequence_dir: Union[str, Path]) -> List[Path]:
    """Frame directories of a sequence, sorted by name."""
    sequence_dir = Path(sequence_dir)
    if not sequence_dir.is_dir():
        raise FileNotFoundError(f"Sequence directory does not exist: {sequence_dir}")
    return sorted(p for p in sequence_dir.iterdir() if p.is_dir() and not p.name.startswith("."))


def replay_sequence(
    sequence_dir: Union[str, Path],
    config: Optional[Dict] = None,
    strategy: Optional[str] = None,
    progress: bool = True,
) -> Tuple[List[Tuple[float, RigidTransform]], Dict[str, int]]:
    """
    Run the odometry pipeline over a saved sequence.

    Args:
        sequence_dir: Directory of saved frames
        config: Full or partial configuration
        strategy: Registration strategy overriding the configuration
        progress: Show a tqdm progress bar

    Returns:
        Tuple of (list of (timestamp, global pose) per processed frame,
        summary counters)
    """
    frame_dirs = list_frame_dirs(sequence_dir)
    vo = RGBDVisualOdometry(config)
    if strategy is not None:
        vo.set_strategy(strategy)

    poses = []
    stats = {"frames": 0, "failures": 0, "rejected": 0, "keyframes": 0, "loop_closures": 0}
    with vo:
        for frame_dir in tqdm(frame_dirs, desc="Replaying", disable=not progress):
            frame = Frame.load(frame_dir)
            result = vo.process_frame(
                frame.rgb,
                frame.depth,
                frame.intrinsics,
                frame.timestamp,
                frame_id=frame.frame_id,
                depth_scale=frame.depth_scale,
            )

            if result["relative_pose"] is None:
                stats["rejected"] += 1
                continue

            stats["frames"] += 1
            stats["failures"] += int(not result["success"])
            stats["keyframes"] += int(result["keyframe"] is not None)
            stats["loop_closures"] += sum(e.accepted for e in result["loop_closures"])
            poses.append((frame.timestamp, result["pose"]))

    logger.info(
        f"Processed {stats['frames']} frames: {stats['failures']} failures, "
        f"{stats['keyframes']} keyframes, {stats['loop_closures']} loop closures"
    )
    return poses, stats


def write_tum_trajectory(path: Union[str, Path], poses: Sequence[Tuple[float, RigidTransform]]):
    """Write poses as ``timestamp tx ty tz qx qy qz qw`` lines."""
    with open(path, "w", encoding="utf-8") as f:
        for timestamp, pose in poses:
            t = pose.translation.tolist()
            w, x, y, z = rotation_matrix_to_quaternion(pose.rotation).tolist()
            f.write(
                f"{timestamp:.6f} {t[0]:.6f} {t[1]:.6f} {t[2]:.6f} "
                f"{x:.6f} {y:.6f} {z:.6f} {w:.6f}\n"
            )


def plot_trajectory(path: Union[str, Path], poses: Sequence[Tuple[float, RigidTransform]]):
    """Save a top-down (X-Z) plot of the trajectory."""
    positions = np.array([pose.translation.tolist() for _, pose in poses]).reshape(-1, 3)

    fig, ax = plt.subplots(figsize=(6, 6))
    ax.plot(positions[:, 0], positions[:, 2], "b-", linewidth=1.5, alpha=0.7)
    if len(positions) > 0:
        ax.scatter(positions[0, 0], positions[0, 2], c="g", s=60, marker="o", label="Start")
        ax.scatter(positions[-1, 0], positions[-1, 2], c="r", s=60, marker="o", label="End")
        ax.legend()
    ax.set_xlabel("X (m)")
    ax.set_ylabel("Z (m)")
    ax.set_title(f"Top-Down View ({len(positions)} frames)")
    ax.grid(True)
    ax.axis("equal")
    fig.savefig(path, dpi=100)
    plt.close(fig)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay a saved RGB-D frame sequence")
    parser.add_argument("sequence", type=str, help="Directory of saved frames")
    parser.add_argument("--config", type=str, default=None, help="YAML configuration file")
    parser.add_argument("--strategy", type=str, default=None, help="Registration strategy")
    parser.add_argument(
        "--output", type=str, default="trajectory.txt", help="TUM-format trajectory output"
    )
    parser.add_argument("--plot", type=str, default=None, help="Save a trajectory plot here")
    parser.add_argument("--no-loop-closure", action="store_true", help="Disable loop closure")
    parser.add_argument("--log-level", type=str, default="INFO")
    parser.add_argument("--quiet", action="store_true", help="Hide the progress bar")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    config = load_config(args.config) if args.config else merge_config()
    if args.no_loop_closure:
        config["loop_closure"]["enabled"] = False

    poses, _ = replay_sequence(args.sequence, config, args.strategy, progress=not args.quiet)

    write_tum_trajectory(args.output, poses)
    logger.info(f"Wrote {len(poses)} poses to {args.output}")
    if args.plot:
        plot_trajectory(args.plot, poses)
        logger.info(f"Saved trajectory plot to {args.plot}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
