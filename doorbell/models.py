"""
Data Models
"""
from datetime import datetime
from pathlib import PurePath
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from doorbell import config

CAMERA_RESOLUTIONS = {
    "low": (320, 240),
    "medium": (640, 480),
    "high": (1280, 720),
}


def url_for_image(image_path: str) -> str:
    """URL under the /images mount for a stored image, empty if there is none"""
    return f"/images/{PurePath(image_path).name}" if image_path else ""


class Person(BaseModel):
    person_id: int
    name: str  # Display name, not unique
    descriptor: List[float]  # Aggregate of the enrollment samples
    image_paths: List[str] = []  # Enrollment images, capture order
    created_at: datetime
    updated_at: datetime

    @property
    def image_count(self) -> int:
        return len(self.image_paths)

    @computed_field
    @property
    def image_urls(self) -> List[str]:
        return [url_for_image(p) for p in self.image_paths]


class DetectionEvent(BaseModel):
    event_id: int
    person_id: Optional[int] = None  # None for unknown faces or deleted people
    person_name: Optional[str] = None  # Kept after the person is deleted
    captured_at: datetime
    image_path: str = ""
    distance: Optional[float] = None  # None when the gallery was empty
    confidence: float = 0.0
    is_known: bool = False

    @computed_field
    @property
    def image_url(self) -> str:
        return url_for_image(self.image_path)


class DoorState(BaseModel):
    is_locked: bool = True
    last_changed: datetime


class RecognitionConfig(BaseModel):
    """Snapshot of the settings a session reads once at start"""
    model_config = ConfigDict(frozen=True)

    distance_threshold: float = Field(config.DISTANCE_THRESHOLD, ge=0.0, le=1.0)
    sample_interval_ms: int = Field(config.SAMPLE_INTERVAL_MS, gt=0)
    enrollment_duration_sec: int = Field(config.ENROLLMENT_DURATION_SEC, gt=0)
    enrollment_target_frames: int = Field(config.ENROLLMENT_TARGET_FRAMES, gt=0)
    extraction_timeout_sec: float = Field(config.EXTRACTION_TIMEOUT_SEC, gt=0)
    snapshot_policy: Literal["all", "unknown", "none"] = "all"
    skip_blurred_frames: bool = True
    blur_threshold: float = Field(config.BLUR_THRESHOLD, ge=0.0, le=1.0)
    resolution: Tuple[int, int] = CAMERA_RESOLUTIONS["medium"]

    @property
    def enrollment_interval_sec(self) -> float:
        return self.enrollment_duration_sec / self.enrollment_target_frames


# Settings sections mirror the settings screen
class NotificationSettings(BaseModel):
    email: bool = True
    browser: bool = True
    sms: bool = False
    email_address: str = "admin@example.com"


class RecognitionSettings(BaseModel):
    distance_threshold: float = Field(config.DISTANCE_THRESHOLD, ge=0.0, le=1.0)
    sample_interval_ms: int = Field(config.SAMPLE_INTERVAL_MS, gt=0)
    extraction_timeout_sec: float = Field(config.EXTRACTION_TIMEOUT_SEC, gt=0)
    snapshot_policy: Literal["all", "unknown", "none"] = "all"
    auto_delete_days: int = Field(90, ge=0)  # 0 keeps history forever
    skip_blurred_frames: bool = True
    blur_threshold: float = Field(config.BLUR_THRESHOLD, ge=0.0, le=1.0)


class CameraSettings(BaseModel):
    resolution: Literal["low", "medium", "high"] = "medium"
    frame_rate: int = Field(24, gt=0)
    enrollment_duration_sec: int = Field(config.ENROLLMENT_DURATION_SEC, gt=0)
    enrollment_target_frames: int = Field(config.ENROLLMENT_TARGET_FRAMES, gt=0)


class AccountSettings(BaseModel):
    name: str = "Admin User"
    email: str = "admin@example.com"


class Settings(BaseModel):
    notifications: NotificationSettings = NotificationSettings()
    recognition: RecognitionSettings = RecognitionSettings()
    camera: CameraSettings = CameraSettings()
    account: AccountSettings = AccountSettings()

    def recognition_config(self) -> RecognitionConfig:
        rec = self.recognition
        cam = self.camera
        return RecognitionConfig(
            distance_threshold=rec.distance_threshold,
            sample_interval_ms=rec.sample_interval_ms,
            enrollment_duration_sec=cam.enrollment_duration_sec,
            enrollment_target_frames=cam.enrollment_target_frames,
            extraction_timeout_sec=rec.extraction_timeout_sec,
            snapshot_policy=rec.snapshot_policy,
            skip_blurred_frames=rec.skip_blurred_frames,
            blur_threshold=rec.blur_threshold,
            resolution=CAMERA_RESOLUTIONS[cam.resolution],
        )


# Request/response bodies
class RenameRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be empty")
        return value


class EnrollmentRequest(RenameRequest):
    pass


class DoorUpdate(BaseModel):
    is_locked: bool


class HistoryPage(BaseModel):
    entries: List[DetectionEvent]
    total: int
    page: int
    limit: int


class TodaySummary(BaseModel):
    total: int
    known: int
    unknown: int
