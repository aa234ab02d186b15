import logging
import math
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

import torch

from ..backend.loop_solver import LoopSolver, RebasingLoopSolver
from ..backend.se3 import DEFAULT_DTYPE, RigidTransform
from ..backend.trajectory import (
    EdgeKind,
    KeyframeEdge,
    Trajectory,
    TrajectorySnapshot,
    hop_distance,
)
from .odometry.base import BaseMotionEstimator
from .odometry.particle_loop import ParticleLoopEstimator


class LoopClosureStatus(Enum):
    """Outcome of a loop-closure candidate."""

    ACCEPTED = 0
    REJECTED = 1


@dataclass
class LoopClosureEvent:
    """Report of a verified (or discarded) loop-closure candidate."""

    status: LoopClosureStatus
    query_id: int
    match_id: int
    transform: Optional[RigidTransform] = None  # Match-to-query transform of the loop edge
    correction: Optional[RigidTransform] = None  # Correction applied to the newest poses
    num_inliers: int = 0
    fitness: float = float("inf")
    message: str = ""
    created: float = 0.0

    @property
    def accepted(self) -> bool:
        return self.status == LoopClosureStatus.ACCEPTED


class LoopClosureCoordinator:
    """
    Background search for loop closures in the keyframe graph.

    Every ``scan_interval`` new keyframes a scan is queued for a worker
    thread. A scan pairs the newest keyframe with older keyframes that are
    spatially close but far apart in the graph, verifies them with the
    particle filter strategy and hands accepted loop edges to the solver.
    Corrected poses are applied to the trajectory in one atomic update.
    Results are reported as ``LoopClosureEvent`` objects on ``events``.
    """

    def __init__(
        self,
        trajectory: Trajectory,
        config: Dict = None,
        verifier: Optional[BaseMotionEstimator] = None,
        solver: Optional[LoopSolver] = None,
    ):
        """
        Initialize loop-closure coordinator.

        Args:
            trajectory: Shared trajectory
            config: Configuration dictionary with the following keys:
                - scan_interval: New keyframes between scans
                - max_candidate_distance: Maximum distance between candidate poses
                - max_candidate_angle: Maximum angle between candidate poses (degrees)
                - min_graph_distance: Minimum hop distance between candidates
                - max_candidates: Candidates verified per scan
                - min_fitness_inliers: Minimum inliers of an accepted closure
                - particle_loop: Configuration of the default verifier
                - solver: Configuration of the default solver
            verifier: Loop verification strategy
            solver: Pose-graph solver
        """
        self.trajectory = trajectory
        self.config = config if config is not None else {}

        self.scan_interval = self.config.get("scan_interval", 5)
        self.max_candidate_distance = self.config.get("max_candidate_distance", 1.0)
        self.max_candidate_angle = math.radians(self.config.get("max_candidate_angle", 45.0))
        self.min_graph_distance = self.config.get("min_graph_distance", 3)
        self.max_candidates = self.config.get("max_candidates", 3)
        self.min_fitness_inliers = self.config.get("min_fitness_inliers", 15)

        if self.scan_interval < 1:
            raise ValueError(f"scan_interval must be positive, got {self.scan_interval}")

        self.verifier = (
            verifier
            if verifier is not None
            else ParticleLoopEstimator(self.config.get("particle_loop"))
        )
        self.solver = (
            solver if solver is not None else RebasingLoopSolver(self.config.get("solver"))
        )

        self.events: "queue.Queue[LoopClosureEvent]" = queue.Queue()
        self._requests: "queue.Queue[Optional[int]]" = queue.Queue()
        self._generation = 0
        self._generation_lock = threading.Lock()
        self._scan_lock = threading.Lock()
        self._keyframes_since_scan = 0
        self._thread: Optional[threading.Thread] = None

        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the background worker."""
        if self.is_running:
            return
        self._thread = threading.Thread(
            target=self._run, name="loop-closure", daemon=True
        )
        self._thread.start()
        self.logger.info("Loop closure worker started")

    def stop(self, timeout: Optional[float] = 5.0):
        """Abort the running scan and stop the background worker."""
        if self._thread is None:
            return
        self._next_generation()
        self._requests.put(None)
        self._thread.join(timeout)
        self._thread = None
        self.logger.info("Loop closure worker stopped")

    def notify_keyframe(self, keyframe_id: int) -> bool:
        """
        Count a new keyframe and request a scan every ``scan_interval`` keyframes.

        Without a running worker the scan is executed synchronously.

        Returns:
            True if a scan was requested
        """
        self._keyframes_since_scan += 1
        if self._keyframes_since_scan < self.scan_interval:
            return False

        self._keyframes_since_scan = 0
        self.logger.debug(f"Requesting loop closure scan at keyframe {keyframe_id}")
        if self.is_running:
            self.request_scan()
        else:
            self.scan_once()
        return True

    def request_scan(self):
        """Queue a scan; a scan still running is superseded."""
        self._requests.put(self._next_generation())

    def scan_once(self) -> List[LoopClosureEvent]:
        """Run a scan synchronously and return its events."""
        return self._scan(self._next_generation())

    def poll_events(self) -> List[LoopClosureEvent]:
        """Drain all pending events."""
        events = []
        while True:
            try:
                events.append(self.events.get_nowait())
            except queue.Empty:
                return events

    def _next_generation(self) -> int:
        with self._generation_lock:
            self._generation += 1
            return self._generation

    def _superseded(self, generation: int) -> bool:
        return generation != self._generation

    def _run(self):
        while True:
            generation = self._requests.get()
            if generation is None:
                return

            # Only the newest pending request matters
            stop = False
            while True:
                try:
                    pending = self._requests.get_nowait()
                except queue.Empty:
                    break
                if pending is None:
                    stop = True
                    break
                generation = pending

            if stop:
                return
            try:
                self._scan(generation)
            except Exception as e:
                self.logger.exception(f"Loop closure scan failed: {e}")

    def select_candidates(self, snapshot: TrajectorySnapshot) -> List[Tuple[int, int, float]]:
        """
        Pair the newest keyframe with spatially close, graph-distant keyframes.

        Returns:
            List of (query id, match id, distance), nearest first, at most
            ``max_candidates`` long
        """
        if snapshot.num_keyframes < 2:
            return []

        query_id = max(snapshot.keyframe_poses)
        query_pose = snapshot.keyframe_poses[query_id]
        candidates = []
        for match_id, pose in snapshot.keyframe_poses.items():
            if match_id >= query_id:
                continue
            relative = query_pose.inverse().compose(pose)
            distance = relative.translation_norm()
            if distance > self.max_candidate_distance:
                continue
            if relative.rotation_angle() > self.max_candidate_angle:
                continue
            if hop_distance(snapshot.edges, query_id, match_id) < self.min_graph_distance:
                continue
            candidates.append((query_id, match_id, distance))

        candidates.sort(key=lambda c: (c[2], c[1]))
        return candidates[: self.max_candidates]

    def _scan(self, generation: int) -> List[LoopClosureEvent]:
        with self._scan_lock:
            snapshot = self.trajectory.snapshot()
            candidates = self.select_candidates(snapshot)
            if not candidates:
                self.logger.debug("No loop closure candidates")
                return []

            with self.trajectory.read():
                frames = {
                    kf_id: self.trajectory.graph.get_keyframe(kf_id).frame
                    for kf_id in {c[0] for c in candidates} | {c[1] for c in candidates}
                }

            events = []
            for query_id, match_id, _ in candidates:
                if self._superseded(generation):
                    self.logger.info("Loop closure scan superseded by a newer request")
                    break

                event = self._try_candidate(snapshot, frames, query_id, match_id, generation)
                events.append(event)
                if event.accepted:
                    # Poses changed; remaining candidates wait for the next scan
                    break

            return events

    def _try_candidate(
        self,
        snapshot: TrajectorySnapshot,
        frames: Dict,
        query_id: int,
        match_id: int,
        generation: int,
    ) -> LoopClosureEvent:
        query_pose = snapshot.keyframe_poses[query_id]
        match_pose = snapshot.keyframe_poses[match_id]
        initial_guess = query_pose.inverse().compose(match_pose)

        estimate = self.verifier.estimate_motion(
            frames[match_id],
            frames[query_id],
            initial_guess,
            should_abort=lambda: self._superseded(generation),
        )

        def rejected(message: str) -> LoopClosureEvent:
            self.logger.info(f"Rejected loop {query_id} -> {match_id}: {message}")
            event = LoopClosureEvent(
                LoopClosureStatus.REJECTED,
                query_id,
                match_id,
                transform=estimate.transform if estimate.success else None,
                num_inliers=estimate.num_inliers,
                fitness=estimate.fitness,
                message=message,
                created=time.time(),
            )
            self.events.put(event)
            return event

        if not estimate.success:
            return rejected(estimate.message or "verification failed")
        if estimate.num_inliers < self.min_fitness_inliers:
            return rejected(
                f"{estimate.num_inliers} inliers below {self.min_fitness_inliers}"
            )

        information = torch.eye(6, dtype=DEFAULT_DTYPE) * float(estimate.num_inliers)
        loop_edge = KeyframeEdge(
            query_id, match_id, estimate.transform, EdgeKind.LOOP, information
        )
        result = self.solver.solve(snapshot.keyframe_poses, list(snapshot.edges) + [loop_edge])
        if not result.success:
            return rejected(f"solver: {result.message}")

        # Queued under the lock, a lock holder never sees the correction without its event
        with self.trajectory.write():
            self.trajectory.graph.add_edge(
                query_id, match_id, estimate.transform, EdgeKind.LOOP, information
            )
            correction = self.trajectory.apply_loop_correction(result.poses)
            event = LoopClosureEvent(
                LoopClosureStatus.ACCEPTED,
                query_id,
                match_id,
                transform=estimate.transform,
                correction=correction,
                num_inliers=estimate.num_inliers,
                fitness=estimate.fitness,
                created=time.time(),
            )
            self.events.put(event)

        self.logger.info(
            f"Accepted loop {query_id} -> {match_id} with {estimate.num_inliers} inliers"
        )
        return event
