from dataclasses import dataclass
from typing import Literal

AspectRatio = Literal["1:1", "4:3", "16:9", "9:16"]
ResolutionPreset = Literal["720p", "1080p"]

# Bumped when the stored data format changes; stamped into meta on startup.
WORKSHOP_SCHEMA_VERSION = 1
SCHEMA_VERSION_KEY = "schemaVersion"
BACKUP_SCHEMA_VERSION = 1

DEFAULT_ASPECT_RATIO: AspectRatio = "16:9"
DEFAULT_RESOLUTION: ResolutionPreset = "720p"
DEFAULT_OUTPUT_COUNT = 1

DUPLICATE_NAME_SUFFIX = " Copy"
IMPORTED_NAME_SUFFIX = " Imported"

MANIFEST_FILENAME = "manifest.json"
ASSETS_DIR = "assets"


@dataclass(frozen=True)
class ResolutionPresetConfig:
    preset: str
    aspect_ratio: str
    width: int
    height: int


RESOLUTION_PRESETS = [
    ResolutionPresetConfig("720p", "16:9", 1280, 720),
    ResolutionPresetConfig("720p", "9:16", 720, 1280),
    ResolutionPresetConfig("720p", "4:3", 960, 720),
    ResolutionPresetConfig("720p", "1:1", 720, 720),
    ResolutionPresetConfig("1080p", "16:9", 1920, 1080),
    ResolutionPresetConfig("1080p", "9:16", 1080, 1920),
    ResolutionPresetConfig("1080p", "4:3", 1440, 1080),
    ResolutionPresetConfig("1080p", "1:1", 1080, 1080),
]


def get_resolution_preset_config(preset: str, aspect_ratio: str) -> ResolutionPresetConfig:
    for entry in RESOLUTION_PRESETS:
        if entry.preset == preset and entry.aspect_ratio == aspect_ratio:
            return entry
    raise ValueError(f"Unsupported preset {preset} for ratio {aspect_ratio}")
