"""Database operations for stored videos and their analysis results."""

from datetime import datetime
from typing import Any, Optional

import aiosqlite
from loguru import logger

from umpire.capture.profiles import PROFILES, CaptureMode, CaptureProfile
from umpire.core.database import get_db, serialize_json, deserialize_json

VIDEO_STATUSES = ("uploading", "processing", "completed", "failed")


def _settings_from_profile(profile: CaptureProfile) -> dict[str, Any]:
    data = {
        "resolution": list(profile.resolution),
        "aspect_ratio": list(profile.aspect_ratio),
        "frame_rate": profile.frame_rate,
        "stabilization": profile.stabilization,
    }
    if profile.mode is CaptureMode.WIDE:
        data["lens_correction"] = profile.lens_correction
        data["wide_angle_multiplier"] = profile.wide_angle_multiplier
    return data


def default_camera_mode(active_mode: CaptureMode | str = CaptureMode.STANDARD) -> dict[str, Any]:
    """Camera mode record built from the built-in capture profiles."""
    mode = CaptureMode(active_mode)
    return {
        "active_mode": mode.value,
        "field_of_view": 120 if mode is CaptureMode.WIDE else 78,
        "standard_settings": _settings_from_profile(PROFILES[CaptureMode.STANDARD]),
        "wide_settings": _settings_from_profile(PROFILES[CaptureMode.WIDE]),
    }


def status_from_row(row: aiosqlite.Row, result: Optional[dict] = None) -> dict[str, Any]:
    """Build the tagged processing status for a video row."""
    status = row["status"]
    if status == "uploading":
        return {"kind": "uploading", "progress": row["progress"]}
    if status == "completed":
        return {"kind": "completed", "result": result}
    if status == "failed":
        return {"kind": "failed", "error": row["error"] or "Unknown error"}
    return {"kind": "processing"}


def video_row_to_dict(row: aiosqlite.Row) -> dict[str, Any]:
    """Convert a database row to a video dictionary matching the API schema."""
    return {
        "id": row["id"],
        "media_path": row["media_path"],
        "mime_type": row["mime_type"],
        "size_bytes": row["size_bytes"],
        "status": row["status"],
        "progress": row["progress"],
        "error": row["error"],
        "active_mode": row["active_mode"],
        "camera_mode": deserialize_json(row["camera_mode_json"]),
        "video_info": deserialize_json(row["video_info_json"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def result_row_to_dict(row: aiosqlite.Row) -> dict[str, Any]:
    """Convert an analysis_results row to a result dictionary."""
    return {
        "lbw_decision": deserialize_json(row["lbw_json"]),
        "no_ball_decision": deserialize_json(row["no_ball_json"]),
        "edge_detection": deserialize_json(row["edge_json"]),
        "frame_data": deserialize_json(row["frame_data_json"]),
        "trajectory_overlay": bytes(row["trajectory_overlay"] or b""),
        "snicko_overlay": bytes(row["snicko_overlay"] or b""),
    }


async def create_video(
    video_id: str,
    mime_type: str,
    media_path: Optional[str] = None,
    size_bytes: int = 0,
    status: str = "uploading",
    active_mode: CaptureMode | str = CaptureMode.STANDARD,
    video_info: Optional[dict] = None,
) -> dict[str, Any]:
    """Create a new video record.

    Args:
        video_id: Unique media identifier.
        mime_type: Container/codec of the stored blob.
        media_path: Where the blob is stored on disk, if anywhere yet.
        size_bytes: Blob size.
        status: Initial processing status.
        active_mode: Capture profile the clip was recorded with.
        video_info: Probed metadata (duration, resolution, fps...).

    Returns:
        The created video as a dictionary.

    Raises:
        ValueError: If the status is not a known processing status.
    """
    if status not in VIDEO_STATUSES:
        raise ValueError(f"Invalid video status: {status}")

    db = await get_db()
    created_at = datetime.utcnow().isoformat()
    camera_mode = default_camera_mode(active_mode)

    await db.execute(
        """
        INSERT INTO videos (
            id, media_path, mime_type, size_bytes, status, progress,
            active_mode, camera_mode_json, video_info_json, created_at
        ) VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
        """,
        (
            video_id,
            media_path,
            mime_type,
            size_bytes,
            status,
            camera_mode["active_mode"],
            serialize_json(camera_mode),
            serialize_json(video_info),
            created_at,
        ),
    )
    await db.commit()

    logger.debug(f"Created video {video_id} in database")

    return {
        "id": video_id,
        "media_path": media_path,
        "mime_type": mime_type,
        "size_bytes": size_bytes,
        "status": status,
        "progress": 0,
        "error": None,
        "active_mode": camera_mode["active_mode"],
        "camera_mode": camera_mode,
        "video_info": video_info,
        "created_at": created_at,
        "updated_at": None,
    }


async def get_video(video_id: str) -> Optional[dict[str, Any]]:
    """Get a video by ID, or None if not found."""
    db = await get_db()

    async with db.execute("SELECT * FROM videos WHERE id = ?", (video_id,)) as cursor:
        row = await cursor.fetchone()

    if not row:
        return None

    return video_row_to_dict(row)


async def get_all_videos(
    limit: int = 50,
    mode: Optional[CaptureMode | str] = None,
) -> list[dict[str, Any]]:
    """Get all videos, newest first, optionally filtered by capture mode."""
    db = await get_db()

    if mode:
        query = "SELECT * FROM videos WHERE active_mode = ? ORDER BY created_at DESC LIMIT ?"
        params = (CaptureMode(mode).value, limit)
    else:
        query = "SELECT * FROM videos ORDER BY created_at DESC LIMIT ?"
        params = (limit,)

    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()

    return [video_row_to_dict(row) for row in rows]


async def filter_videos_by_mode(mode: CaptureMode | str, limit: int = 1000) -> list[dict[str, Any]]:
    return await get_all_videos(limit=limit, mode=mode)


# Valid column names for video updates (prevents SQL injection)
_VALID_VIDEO_COLUMNS = {
    "media_path", "mime_type", "size_bytes", "status", "progress", "error",
    "active_mode", "camera_mode_json", "video_info_json", "updated_at",
}


async def update_video(video_id: str, **updates: Any) -> bool:
    """Update a video record.

    Args:
        video_id: The video ID to update.
        **updates: Fields to update. 'camera_mode' and 'video_info' are
                   serialized to JSON.

    Returns:
        True if the video was updated, False if not found.

    Raises:
        ValueError: If an invalid column name or status is provided.
    """
    db = await get_db()

    if "camera_mode" in updates:
        updates["camera_mode_json"] = serialize_json(updates.pop("camera_mode"))
    if "video_info" in updates:
        updates["video_info_json"] = serialize_json(updates.pop("video_info"))
    if "status" in updates and updates["status"] not in VIDEO_STATUSES:
        raise ValueError(f"Invalid video status: {updates['status']}")

    for key in updates.keys():
        if key not in _VALID_VIDEO_COLUMNS:
            raise ValueError(f"Invalid column name for video update: {key}")

    if not updates:
        return True  # Nothing to update

    updates.setdefault("updated_at", datetime.utcnow().isoformat())

    set_clauses = []
    values = []
    for key, value in updates.items():
        set_clauses.append(f"{key} = ?")
        values.append(value)

    values.append(video_id)
    query = f"UPDATE videos SET {', '.join(set_clauses)} WHERE id = ?"

    cursor = await db.execute(query, values)
    await db.commit()

    return cursor.rowcount > 0


async def delete_video(video_id: str) -> bool:
    """Delete a video and its analysis result.

    Returns:
        True if the video was deleted, False if not found.
    """
    db = await get_db()

    # Results are deleted automatically due to ON DELETE CASCADE
    cursor = await db.execute("DELETE FROM videos WHERE id = ?", (video_id,))
    await db.commit()

    deleted = cursor.rowcount > 0
    if deleted:
        logger.debug(f"Deleted video {video_id} from database")

    return deleted


# ============================================================================
# Processing status
# ============================================================================


async def get_video_status(video_id: str) -> Optional[dict[str, Any]]:
    """Get the tagged processing status of a video, or None if not found."""
    db = await get_db()

    async with db.execute("SELECT * FROM videos WHERE id = ?", (video_id,)) as cursor:
        row = await cursor.fetchone()

    if not row:
        return None

    result = await get_analysis_result(video_id) if row["status"] == "completed" else None
    return status_from_row(row, result)


async def set_video_status(
    video_id: str,
    status: str,
    progress: Optional[int] = None,
    error: Optional[str] = None,
) -> bool:
    """Move a video to a new processing status."""
    updates: dict[str, Any] = {"status": status, "error": error}
    if progress is not None:
        updates["progress"] = max(0, min(100, int(progress)))
    updated = await update_video(video_id, **updates)
    if updated:
        logger.debug(f"Video {video_id} status -> {status}")
    return updated


# ============================================================================
# Analysis results
# ============================================================================


async def store_analysis_result(video_id: str, result: dict[str, Any]) -> bool:
    """Store (or replace) the compiled result and mark the video completed.

    Args:
        video_id: The video the result belongs to.
        result: Dict with lbw_decision, no_ball_decision, edge_detection
                (each {text, confidence, reasoning}), frame_data
                (list of {ball_position: [x, y]}) and optional overlay bytes.

    Returns:
        True if stored, False if the video does not exist.
    """
    if await get_video(video_id) is None:
        return False

    db = await get_db()
    now = datetime.utcnow().isoformat()

    await db.execute(
        """
        INSERT INTO analysis_results (
            video_id, lbw_json, no_ball_json, edge_json, frame_data_json,
            trajectory_overlay, snicko_overlay, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(video_id) DO UPDATE SET
            lbw_json = excluded.lbw_json,
            no_ball_json = excluded.no_ball_json,
            edge_json = excluded.edge_json,
            frame_data_json = excluded.frame_data_json,
            trajectory_overlay = excluded.trajectory_overlay,
            snicko_overlay = excluded.snicko_overlay,
            updated_at = ?
        """,
        (
            video_id,
            serialize_json(result["lbw_decision"]),
            serialize_json(result["no_ball_decision"]),
            serialize_json(result["edge_detection"]),
            serialize_json(result["frame_data"]),
            bytes(result.get("trajectory_overlay") or b""),
            bytes(result.get("snicko_overlay") or b""),
            now,
            now,
        ),
    )
    await db.commit()

    await set_video_status(video_id, "completed", progress=100)
    logger.debug(f"Stored analysis result for video {video_id}")
    return True


async def get_analysis_result(video_id: str) -> Optional[dict[str, Any]]:
    """Get the compiled result for a video, or None if none was stored."""
    db = await get_db()

    async with db.execute(
        "SELECT * FROM analysis_results WHERE video_id = ?", (video_id,)
    ) as cursor:
        row = await cursor.fetchone()

    if not row:
        return None

    return result_row_to_dict(row)


# ============================================================================
# Camera mode
# ============================================================================


async def get_camera_mode(video_id: str) -> Optional[dict[str, Any]]:
    video = await get_video(video_id)
    if video is None:
        return None
    return video["camera_mode"]


async def update_camera_mode(video_id: str, camera_mode: dict[str, Any]) -> bool:
    """Replace the camera mode data for a video.

    Raises:
        ValueError: If active_mode is not a known capture mode.
    """
    active_mode = CaptureMode(camera_mode["active_mode"]).value
    return await update_video(video_id, camera_mode=camera_mode, active_mode=active_mode)
