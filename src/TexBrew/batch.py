"""Convert whole directory trees concurrently with a partial-success report."""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from tqdm import tqdm

from .config import (
    CompressionSettings,
    MipGenerationProfile,
    PipelineConfig,
    TextureType,
    ToksvigSettings,
)
from .core import classify_texture
from .pipeline import ConversionResult, TextureConversionPipeline

logger = logging.getLogger("texture_conversion.batch")

_SKIP_DIRS = {"mipmaps"}

ProfileSelector = Callable[[str], Optional[MipGenerationProfile]]


@dataclass
class BatchProgress:
    completed: int
    total: int
    current_file: str
    success: bool


@dataclass
class BatchResult:
    total: int = 0
    success_count: int = 0
    failure_count: int = 0
    results: List[ConversionResult] = field(default_factory=list)
    error: Optional[str] = None
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def duration(self) -> float:
        return max(0.0, self.end_time - self.start_time)

    def failures(self) -> List[Tuple[str, str]]:
        return [(r.input_path, r.error or "unknown error") for r in self.results if not r.success]

    def summary(self) -> str:
        if self.error:
            return f"Batch failed: {self.error}"
        return (f"{self.success_count}/{self.total} textures converted, "
                f"{self.failure_count} failed in {self.duration:.1f}s")


def name_based_profile_selector(path: str, config: Optional[PipelineConfig] = None
                                ) -> Optional[MipGenerationProfile]:
    """Pick the mip profile from the filename's texture-type suffix.

    Returns None for names without a known suffix so the pipeline can
    classify the decoded image instead.
    """
    tex_type = classify_texture(path)
    if tex_type == TextureType.GENERIC:
        return None
    return (config or PipelineConfig()).profile_for(tex_type)


class BatchProcessor:
    """Run `TextureConversionPipeline` over every supported file in a tree."""

    def __init__(self, pipeline: Optional[TextureConversionPipeline] = None,
                 config: Optional[PipelineConfig] = None,
                 show_progress: bool = True):
        self.config = config or (pipeline.config if pipeline else PipelineConfig())
        self.pipeline = pipeline or TextureConversionPipeline(self.config)
        self.show_progress = show_progress

    def find_textures(self, input_dir: str) -> List[str]:
        """Recursively list supported images, sorted, skipping debug mip dirs."""
        exts = {e.lower() for e in self.config.supported_formats}
        found = []
        for root, dirs, files in os.walk(input_dir):
            dirs[:] = sorted(d for d in dirs if d not in _SKIP_DIRS)
            for name in sorted(files):
                if Path(name).suffix.lower() in exts:
                    found.append(os.path.join(root, name))
        return found

    def output_path_for(self, path: str, input_dir: str, output_dir: str) -> str:
        rel = Path(os.path.relpath(path, input_dir)).with_suffix(self.config.output_extension)
        return os.path.join(output_dir, str(rel))

    async def process_directory_async(
        self,
        input_dir: str,
        output_dir: str,
        compression: Optional[CompressionSettings] = None,
        profile_selector: Optional[ProfileSelector] = None,
        toksvig: Optional[ToksvigSettings] = None,
        max_parallelism: int = 4,
        progress: Optional[Callable[[BatchProgress], None]] = None,
    ) -> BatchResult:
        """Convert every texture under `input_dir`, mirroring paths into `output_dir`."""
        batch = BatchResult(start_time=time.time())
        if not os.path.isdir(input_dir):
            batch.error = f"Input directory not found: {input_dir}"
            batch.end_time = time.time()
            logger.error(batch.error)
            return batch

        files = self.find_textures(input_dir)
        batch.total = len(files)
        if not files:
            logger.warning("No supported textures found in %s", input_dir)
            batch.end_time = time.time()
            return batch

        selector = profile_selector or (
            lambda p: name_based_profile_selector(p, self.config)
        )
        semaphore = asyncio.Semaphore(max(1, max_parallelism))
        completed = 0
        logger.info("Converting %d textures from %s (parallelism=%d)",
                    len(files), input_dir, max_parallelism)

        with tqdm(total=len(files), desc="Converting", unit="tex",
                  disable=not self.show_progress) as bar:

            async def convert_one(path: str) -> ConversionResult:
                nonlocal completed
                out_path = self.output_path_for(path, input_dir, output_dir)
                async with semaphore:
                    try:
                        result = await self.pipeline.convert_texture_async(
                            path, out_path, selector(path), compression, toksvig,
                        )
                    except asyncio.CancelledError:
                        raise
                    except Exception as exc:
                        logger.error("Unexpected failure converting %s: %s", path, exc,
                                     exc_info=True)
                        result = ConversionResult(input_path=path, output_path=out_path,
                                                  error=str(exc))
                completed += 1
                bar.update(1)
                if progress is not None:
                    progress(BatchProgress(completed, len(files), path, result.success))
                return result

            batch.results = list(await asyncio.gather(*(convert_one(p) for p in files)))

        batch.success_count = sum(1 for r in batch.results if r.success)
        batch.failure_count = batch.total - batch.success_count
        batch.end_time = time.time()
        logger.info(batch.summary())
        for path, error in batch.failures():
            logger.warning("  failed: %s (%s)", path, error)
        return batch
