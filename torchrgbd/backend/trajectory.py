"""
Synchronized trajectory state: the running global pose and the keyframe graph.

All writers go through ``Trajectory.write()``; readers take an immutable
``TrajectorySnapshot`` so they observe either the state before or after a
logical update, never a partial one.
"""
import logging
import math
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import torch

from .se3 import DEFAULT_DTYPE, RigidTransform


def hop_distance(edges: Sequence["KeyframeEdge"], a: int, b: int) -> float:
    """
    Number of edges on the shortest undirected path between two keyframes.

    Returns ``math.inf`` when the keyframes are not connected.
    """
    if a == b:
        return 0
    adjacency: Dict[int, List[int]] = {}
    for e in edges:
        adjacency.setdefault(e.source, []).append(e.target)
        adjacency.setdefault(e.target, []).append(e.source)

    visited = {a}
    queue = deque([(a, 0)])
    while queue:
        node, hops = queue.popleft()
        for nxt in adjacency.get(node, []):
            if nxt == b:
                return hops + 1
            if nxt not in visited:
                visited.add(nxt)
                queue.append((nxt, hops + 1))
    return math.inf


class EdgeKind(Enum):
    """Kind of a keyframe graph edge."""

    SEQUENTIAL = 0  # Between consecutive keyframes
    LOOP = 1  # Added by loop closure, points backward in creation order


@dataclass
class KeyframeEdge:
    """
    Relative transform constraint between two keyframes.

    ``transform`` maps target coordinates into source coordinates, i.e.
    ``pose(source)^-1 * pose(target)``.
    """

    source: int
    target: int
    transform: RigidTransform
    kind: EdgeKind = EdgeKind.SEQUENTIAL
    information: torch.Tensor = field(
        default_factory=lambda: torch.eye(6, dtype=DEFAULT_DTYPE)
    )

    def copy(self) -> "KeyframeEdge":
        return KeyframeEdge(
            self.source, self.target, self.transform.clone(), self.kind, self.information.clone()
        )


class Keyframe:
    """A retained frame with its global pose and a stable identifier."""

    def __init__(self, keyframe_id: int, frame: Any, pose: RigidTransform):
        """
        Initialize a keyframe.

        Args:
            keyframe_id: Unique identifier, increasing in creation order
            frame: The retained Frame
            pose: Global pose of the keyframe
        """
        self.id = keyframe_id
        self.frame = frame
        self.pose = pose

    @property
    def timestamp(self) -> float:
        return getattr(self.frame, "timestamp", 0.0)

    def __repr__(self) -> str:
        return f"Keyframe(id={self.id}, t={self.timestamp:.3f})"


class KeyframeGraph:
    """
    Arena of keyframes indexed by id with a separate edge list.

    Keyframes are never removed; every keyframe except the first has
    exactly one incoming sequential edge.
    """

    def __init__(self):
        self.keyframes: Dict[int, Keyframe] = {}
        self.edges: List[KeyframeEdge] = []
        self._next_id = 0

    def __len__(self) -> int:
        return len(self.keyframes)

    def __contains__(self, keyframe_id: int) -> bool:
        return keyframe_id in self.keyframes

    @property
    def latest(self) -> Optional[Keyframe]:
        if not self.keyframes:
            return None
        return self.keyframes[self._next_id - 1]

    def add_keyframe(self, frame: Any, pose: RigidTransform) -> Keyframe:
        """Add a keyframe with the next identifier."""
        keyframe = Keyframe(self._next_id, frame, pose.clone())
        self.keyframes[keyframe.id] = keyframe
        self._next_id += 1
        return keyframe

    def add_edge(
        self,
        source: int,
        target: int,
        transform: RigidTransform,
        kind: EdgeKind = EdgeKind.SEQUENTIAL,
        information: Optional[torch.Tensor] = None,
    ) -> KeyframeEdge:
        """
        Add an edge between two existing keyframes.

        Raises:
            ValueError: If a keyframe is unknown, the edge is a self loop or
                the target already has an incoming sequential edge
        """
        if source not in self.keyframes or target not in self.keyframes:
            raise ValueError(f"Unknown keyframe in edge {source} -> {target}")
        if source == target:
            raise ValueError(f"Self edge on keyframe {source}")
        if kind == EdgeKind.SEQUENTIAL and any(
            e.kind == EdgeKind.SEQUENTIAL and e.target == target for e in self.edges
        ):
            raise ValueError(f"Keyframe {target} already has a sequential edge")

        edge = KeyframeEdge(source, target, transform.clone(), kind)
        if information is not None:
            if information.shape != (6, 6):
                raise ValueError(f"Expected 6x6 information matrix, got {tuple(information.shape)}")
            edge.information = information.to(DEFAULT_DTYPE)
        self.edges.append(edge)
        return edge

    def get_keyframe(self, keyframe_id: int) -> Keyframe:
        return self.keyframes[keyframe_id]

    def get_edges(self, keyframe_id: int) -> List[KeyframeEdge]:
        """Edges incident to a keyframe, in insertion order."""
        return [e for e in self.edges if keyframe_id in (e.source, e.target)]

    def neighbors(self, keyframe_id: int) -> List[int]:
        result = []
        for e in self.get_edges(keyframe_id):
            other = e.target if e.source == keyframe_id else e.source
            if other not in result:
                result.append(other)
        return result

    def graph_distance(self, a: int, b: int) -> float:
        """
        Number of edges on the shortest path between two keyframes.

        Edges are treated as undirected. Returns ``math.inf`` when the
        keyframes are not connected.
        """
        return hop_distance(self.edges, a, b)

    def get_keyframes_near(
        self, pose: RigidTransform, radius: float, angle: float = math.pi
    ) -> List[Tuple[Keyframe, float]]:
        """
        Keyframes whose pose lies within a distance and angle of ``pose``.

        Args:
            pose: Query global pose
            radius: Maximum translation distance
            angle: Maximum relative rotation angle in radians

        Returns:
            List of (keyframe, distance), nearest first
        """
        result = []
        for keyframe in self.keyframes.values():
            relative = pose.inverse().compose(keyframe.pose)
            distance = relative.translation_norm()
            if distance <= radius and relative.rotation_angle() <= angle:
                result.append((keyframe, distance))
        result.sort(key=lambda item: (item[1], item[0].id))
        return result


class PoseIntegrator:
    """Running global pose, composed from relative motions in arrival order."""

    def __init__(self, initial_pose: Optional[RigidTransform] = None):
        self.pose = initial_pose.clone() if initial_pose is not None else RigidTransform.identity()

    def integrate(self, relative: RigidTransform) -> RigidTransform:
        """Right-multiply the global pose by a relative motion."""
        self.pose = self.pose.compose(relative)
        return self.pose

    def rebase(self, delta: RigidTransform) -> RigidTransform:
        """Left-multiply the global pose by a world-frame correction."""
        self.pose = delta.compose(self.pose)
        return self.pose

    def reset(self, pose: Optional[RigidTransform] = None):
        self.pose = pose.clone() if pose is not None else RigidTransform.identity()


@dataclass(frozen=True)
class TrajectorySnapshot:
    """Immutable, internally consistent copy of the trajectory state."""

    version: int
    global_pose: RigidTransform
    keyframe_poses: Mapping[int, RigidTransform]
    edges: Tuple[KeyframeEdge, ...]

    @property
    def num_keyframes(self) -> int:
        return len(self.keyframe_poses)


class Trajectory:
    """
    Owner of the global pose and the keyframe graph.

    A single re-entrant lock serializes writers. Every ``write()`` block is
    one logical update and bumps ``version`` when it exits.
    """

    def __init__(self, initial_pose: Optional[RigidTransform] = None):
        self._lock = threading.RLock()
        self.integrator = PoseIntegrator(initial_pose)
        self.graph = KeyframeGraph()
        self.version = 0
        self.logger = logging.getLogger(self.__class__.__name__)

    @contextmanager
    def write(self) -> Iterator["Trajectory"]:
        """
        Critical section for one logical update.

        The version only advances when the block completes; an update that
        raises leaves it unchanged.
        """
        with self._lock:
            yield self
            self.version += 1

    @contextmanager
    def read(self) -> Iterator["Trajectory"]:
        """Hold the lock while reading live state."""
        with self._lock:
            yield self

    @property
    def global_pose(self) -> RigidTransform:
        with self._lock:
            return self.integrator.pose.clone()

    def snapshot(self) -> TrajectorySnapshot:
        """Take a consistent copy of the global pose, keyframe poses and edges."""
        with self._lock:
            return TrajectorySnapshot(
                version=self.version,
                global_pose=self.integrator.pose.clone(),
                keyframe_poses=MappingProxyType(
                    {kf_id: kf.pose.clone() for kf_id, kf in self.graph.keyframes.items()}
                ),
                edges=tuple(e.copy() for e in self.graph.edges),
            )

    def apply_loop_correction(self, corrected: Dict[int, RigidTransform]) -> RigidTransform:
        """
        Apply solver-corrected keyframe poses as one atomic update.

        Keyframes listed in ``corrected`` take their new pose. Keyframes
        created after the latest corrected one (added while the solver ran)
        and the global pose are re-based by that keyframe's correction.
        Keyframes not listed and older than the latest corrected one are
        left untouched.

        Args:
            corrected: Corrected global poses by keyframe id

        Returns:
            The rigid correction applied to the newest part of the trajectory
        """
        if not corrected:
            raise ValueError("No corrected poses to apply")

        with self.write():
            unknown = [kf_id for kf_id in corrected if kf_id not in self.graph]
            if unknown:
                raise ValueError(f"Unknown keyframes in correction: {unknown}")

            latest_id = max(corrected)
            latest = self.graph.get_keyframe(latest_id)
            delta = corrected[latest_id].compose(latest.pose.inverse())

            for kf_id, pose in corrected.items():
                self.graph.get_keyframe(kf_id).pose = pose.clone()

            for kf_id, keyframe in self.graph.keyframes.items():
                if kf_id > latest_id:
                    keyframe.pose = delta.compose(keyframe.pose)

            self.integrator.rebase(delta)

        self.logger.info(
            f"Applied loop correction to {len(corrected)} keyframes "
            f"(|t|={delta.translation_norm():.3f}, angle={math.degrees(delta.rotation_angle()):.2f} deg)"
        )
        return delta
