"""
Video liveness analysis and liveness frame extraction with OpenCV.

A capture is live when a face is seen in at least two samples taken at least
LIVENESS_MIN_SAMPLE_GAP_SECONDS apart, and its centroid moved by more than
LIVENESS_MOVEMENT_THRESHOLD (fraction of the frame diagonal) between the first
and the last detection.
"""
import logging
import math
import os
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import cv2

from config import settings
from .face_match import find_faces
from .schemas import VideoLivenessResult
from .utils import cleanup_temp_file, materialize_media

logger = logging.getLogger(__name__)


@dataclass
class FaceSample:
    timestamp: float    # seconds from the start of the video
    centroid_x: float   # normalized 0-1
    centroid_y: float   # normalized 0-1
    face_count: int


def assess_face_track(
    samples: Sequence[FaceSample],
    min_gap_seconds: Optional[float] = None,
    movement_threshold: Optional[float] = None,
) -> VideoLivenessResult:
    """Decide face presence and movement from per-sample detections (samples without faces excluded)."""
    min_gap = settings.LIVENESS_MIN_SAMPLE_GAP_SECONDS if min_gap_seconds is None else min_gap_seconds
    threshold = settings.LIVENESS_MOVEMENT_THRESHOLD if movement_threshold is None else movement_threshold

    detected = sorted((s for s in samples if s.face_count > 0), key=lambda s: s.timestamp)
    face_count = max((s.face_count for s in detected), default=0)

    if len(detected) < 2:
        return VideoLivenessResult(face_present=False, movement_detected=False, face_count=face_count)

    first, last = detected[0], detected[-1]
    face_present = (last.timestamp - first.timestamp) >= min_gap

    # Normalized coordinates: the diagonal of the unit frame is sqrt(2)
    shift = math.hypot(last.centroid_x - first.centroid_x, last.centroid_y - first.centroid_y) / math.sqrt(2)
    movement_detected = face_present and shift > threshold

    return VideoLivenessResult(
        face_present=face_present,
        movement_detected=movement_detected,
        face_count=face_count,
    )


def sample_face_track(video_path: str, max_samples: Optional[int] = None) -> List[FaceSample]:
    """Open a local video, sample frames evenly and detect the largest face in each."""
    max_samples = max_samples or settings.LIVENESS_SAMPLE_FRAMES
    cap = cv2.VideoCapture(video_path)
    if not cap.isOpened():
        raise IOError(f"Could not open video: {video_path}")

    try:
        total_frames = int(cap.get(cv2.CAP_PROP_FRAME_COUNT))
        fps = cap.get(cv2.CAP_PROP_FPS) or 25
        if total_frames <= 0:
            return []

        step = max(1, total_frames // max_samples)
        samples = []
        for idx in list(range(0, total_frames, step))[:max_samples]:
            cap.set(cv2.CAP_PROP_POS_FRAMES, idx)
            ret, frame = cap.read()
            if not ret or frame is None:
                continue

            h, w = frame.shape[:2]
            faces = find_faces(frame)
            if len(faces) == 0:
                samples.append(FaceSample(idx / fps, 0.0, 0.0, 0))
                continue

            x, y, fw, fh = max(faces, key=lambda f: f[2] * f[3])
            samples.append(FaceSample(
                timestamp=idx / fps,
                centroid_x=(x + fw / 2) / w,
                centroid_y=(y + fh / 2) / h,
                face_count=len(faces),
            ))
        return samples
    finally:
        cap.release()


def analyze_video(video_ref: str) -> VideoLivenessResult:
    """Video liveness contract: (videoRef) -> {face_present, movement_detected, face_count}."""
    path, is_temp = materialize_media(video_ref)
    try:
        samples = sample_face_track(path)
    finally:
        if is_temp:
            cleanup_temp_file(path)

    result = assess_face_track(samples)
    logger.info(
        f"[LIVENESS] {len(samples)} samples, face_present={result.face_present} "
        f"movement={result.movement_detected} faces={result.face_count}"
    )
    return result


def _grab_frames(video_path: str, timemarks: Sequence[float]) -> List:
    cap = cv2.VideoCapture(video_path)
    if not cap.isOpened():
        raise IOError(f"Could not open video: {video_path}")
    frames = []
    try:
        for mark in timemarks:
            cap.set(cv2.CAP_PROP_POS_MSEC, mark * 1000)
            ret, frame = cap.read()
            if ret and frame is not None:
                frames.append(frame)
    finally:
        cap.release()
    return frames


def _write_frame(frame, organization_id: str, verification_id: str) -> str:
    rel_dir = os.path.join(organization_id, verification_id, "liveness")
    os.makedirs(os.path.join(settings.MEDIA_ROOT, rel_dir), exist_ok=True)

    h, w = frame.shape[:2]
    if w > 640:
        frame = cv2.resize(frame, (640, int(h * 640 / w)))

    ref = os.path.join(rel_dir, f"frame-{uuid.uuid4().hex}.jpg")
    if not cv2.imwrite(os.path.join(settings.MEDIA_ROOT, ref), frame):
        raise IOError(f"Could not write liveness frame {ref}")
    return ref


def generate_liveness_thumbnails(
    video_ref: str,
    organization_id: str,
    verification_id: str,
    count: int = 3,
) -> Dict[str, Dict[str, str]]:
    """
    Extract JPEG frames at fixed timemarks (0, 1, 2 s) and store them under MEDIA_ROOT.
    Returns document_images entries keyed liveness_frame_1..N.
    """
    timemarks = [0, 1, 2][:max(1, count)]
    path, is_temp = materialize_media(video_ref)
    try:
        frames = _grab_frames(path, timemarks)
    finally:
        if is_temp:
            cleanup_temp_file(path)

    entries = {}
    for index, frame in enumerate(frames, start=1):
        ref = _write_frame(frame, organization_id, verification_id)
        entries[f"liveness_frame_{index}"] = {"ref": ref, "type": "image"}
    return entries


def extract_liveness_frame(video_ref: str, organization_id: str, verification_id: str) -> str:
    """Extract one representative frame for face comparison and return its media reference."""
    frames = generate_liveness_thumbnails(video_ref, organization_id, verification_id, count=1)
    if not frames:
        raise ValueError(f"No frame could be extracted from {video_ref}")
    return frames["liveness_frame_1"]["ref"]
