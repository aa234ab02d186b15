import numpy as np
import pytest

from torchrgbd.backend.se3 import RigidTransform
from torchrgbd.frontend.frame import Frame
from torchrgbd.tools.replay import (
    list_frame_dirs,
    main,
    replay_sequence,
    write_tum_trajectory,
)

ICP_CONFIG = {"registration": {"type": "icp"}, "loop_closure": {"enabled": False}}


@pytest.fixture
def sequence_dir(tmp_path, intrinsics):
    """Three identical textured views of a wall 2 m away."""
    rng = np.random.default_rng(0)
    small = rng.integers(0, 256, size=(60, 80), dtype=np.uint8)
    gray = np.kron(small, np.ones((8, 8), dtype=np.uint8))
    rgb = np.repeat(gray[:, :, None], 3, axis=2)
    depth = np.full(gray.shape, 2.0, dtype=np.float32)

    sequence = tmp_path / "sequence"
    sequence.mkdir()
    for i in range(3):
        frame = Frame(rgb, depth, intrinsics, timestamp=0.1 * i, frame_id="camera")
        Frame.save(frame, sequence / f"{i:06d}")
    return sequence


def test_list_frame_dirs(sequence_dir):
    (sequence_dir / ".hidden").mkdir()
    (sequence_dir / "notes.txt").write_text("not a frame")
    assert [p.name for p in list_frame_dirs(sequence_dir)] == ["000000", "000001", "000002"]


def test_list_missing_sequence(tmp_path):
    with pytest.raises(FileNotFoundError):
        list_frame_dirs(tmp_path / "missing")


def test_replay_static_sequence(sequence_dir):
    poses, stats = replay_sequence(sequence_dir, ICP_CONFIG, progress=False)

    assert [round(t, 6) for t, _ in poses] == [0.0, 0.1, 0.2]
    for _, pose in poses:
        assert pose.allclose(RigidTransform.identity(), atol=1e-6)
    assert stats["frames"] == 3
    assert stats["rejected"] == 0
    assert stats["keyframes"] == 1
    assert stats["loop_closures"] == 0


def test_write_tum_trajectory(tmp_path):
    pose = RigidTransform.from_elements(0.0, 0.0, 0.0, 1.0, 2.0, 3.0)
    path = tmp_path / "trajectory.txt"
    write_tum_trajectory(path, [(0.0, RigidTransform.identity()), (0.5, pose)])

    lines = path.read_text().splitlines()
    assert len(lines) == 2
    fields = [float(v) for v in lines[1].split()]
    assert len(fields) == 8
    assert fields[:4] == [0.5, 1.0, 2.0, 3.0]
    assert fields[4:] == [0.0, 0.0, 0.0, 1.0]


def test_main(sequence_dir, tmp_path):
    output = tmp_path / "out.txt"
    plot = tmp_path / "plot.png"

    code = main(
        [
            str(sequence_dir),
            "--output",
            str(output),
            "--plot",
            str(plot),
            "--strategy",
            "icp",
            "--no-loop-closure",
            "--quiet",
        ]
    )

    assert code == 0
    assert len(output.read_text().splitlines()) == 3
    assert plot.stat().st_size > 0
