"""Database models for stored videos and analysis results."""

from umpire.models.video import (
    create_video,
    get_video,
    get_all_videos,
    filter_videos_by_mode,
    update_video,
    delete_video,
    get_video_status,
    set_video_status,
    store_analysis_result,
    get_analysis_result,
    get_camera_mode,
    update_camera_mode,
    video_row_to_dict,
    result_row_to_dict,
)

__all__ = [
    "create_video",
    "get_video",
    "get_all_videos",
    "filter_videos_by_mode",
    "update_video",
    "delete_video",
    "get_video_status",
    "set_video_status",
    "store_analysis_result",
    "get_analysis_result",
    "get_camera_mode",
    "update_camera_mode",
    "video_row_to_dict",
    "result_row_to_dict",
]
