from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .config import NORMALIZE_FPS, NORMALIZE_MAX_HEIGHT, NORMALIZE_MAX_WIDTH
from .engine import Engine
from .errors import TranscodeFailure
from .logging import get_logger
from .uploads import InputDescriptor
from .workspace import Workspace

log = get_logger(__name__)


@dataclass(frozen=True)
class NormalizationProfile:
    """Canonical output shape every input is re-encoded to.

    All normalized files share this profile, which is what makes the later
    stream-copy concatenation valid.
    """

    max_width: int = NORMALIZE_MAX_WIDTH
    max_height: int = NORMALIZE_MAX_HEIGHT
    fps: int = NORMALIZE_FPS
    video_codec: str = "libx264"
    video_preset: str = "fast"
    crf: int = 23
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    audio_sample_rate: int = 44100
    audio_channels: int = 2

    @property
    def video_filter(self) -> str:
        # Fit inside the box without upscaling, keep aspect, pad to even sizes for yuv420p.
        return (
            f"scale='min({self.max_width},iw)':'min({self.max_height},ih)'"
            ":force_original_aspect_ratio=decrease"
            ",pad=ceil(iw/2)*2:ceil(ih/2)*2"
        )

    def output_flags(self) -> list[str]:
        return [
            "-vf", self.video_filter,
            "-r", str(self.fps),
            "-c:v", self.video_codec,
            "-preset", self.video_preset,
            "-crf", str(self.crf),
            "-c:a", self.audio_codec,
            "-b:a", self.audio_bitrate,
            "-ar", str(self.audio_sample_rate),
            "-ac", str(self.audio_channels),
            "-movflags", "+faststart",
        ]


def normalized_path(workspace: Workspace, index: int) -> Path:
    return workspace.path / f"norm-{index}.mp4"


def transcode_args(input_path: Path, output_path: Path, profile: NormalizationProfile) -> list[str]:
    return ["-y", "-i", str(input_path), *profile.output_flags(), str(output_path)]


class TranscodeStage:
    """Normalize inputs one at a time, in order, stopping at the first failure."""

    def __init__(self, engine: Engine, profile: NormalizationProfile | None = None) -> None:
        self.engine = engine
        self.profile = profile or NormalizationProfile()

    async def run(self, inputs: Sequence[InputDescriptor], workspace: Workspace) -> list[Path]:
        outputs: list[Path] = []
        total = len(inputs)
        for index, item in enumerate(inputs):
            output_path = normalized_path(workspace, index)
            log.info(
                "normalize_started",
                position=index + 1,
                total=total,
                declared_name=item.declared_name,
            )
            result = await self.engine.run(transcode_args(item.stored_path, output_path, self.profile))
            if not result.ok:
                log.error(
                    "normalize_failed",
                    declared_name=item.declared_name,
                    returncode=result.returncode,
                    stderr=result.stderr_tail,
                )
                raise TranscodeFailure(
                    f'Failed to normalize "{item.declared_name}".',
                    input_name=item.declared_name,
                    details={"returncode": result.returncode},
                )
            log.info("normalized", source=item.stored_path.name, output=output_path.name)
            outputs.append(output_path)
        return outputs
