"""Orchestrate one texture (or one packed set) from source pixels to KTX2.

`TextureConversionPipeline` chains decode, mip generation, optional Toksvig
correction, scratch PNG export and the external encoder.  Every mandatory
failure is recorded on the returned `ConversionResult`; only task
cancellation propagates, and only after scratch cleanup.
"""

import asyncio
import functools
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple
from uuid import uuid4

import numpy as np

from .config import (
    AlphaPolicy,
    ChannelPackingSettings,
    CompressionSettings,
    FilterType,
    MipGenerationProfile,
    PipelineConfig,
    TextureType,
    ToksvigSettings,
    channel_texture_type,
)
from .core import (
    ChainedNormalMapResolver,
    DiagnosticEvent,
    Diagnostics,
    ExplicitNormalMapResolver,
    NormalMapResolver,
    classify_texture,
    classify_texture_by_content,
    default_normal_map_resolver,
    has_alpha,
    is_gloss_by_name,
    load_image,
    save_image,
    strip_texture_suffix,
)
from .errors import ComputationError, ConfigurationError, InputError
from .phases.encoder import KtxEncoder
from .phases.mipmap import MipGenerator
from .phases.packing import ChannelPackingPipeline, PackedMipChain
from .phases.toksvig import ToksvigProcessor, ToksvigResult

logger = logging.getLogger("texture_conversion.pipeline")

_DEBUG_DIR_NAME = "mipmaps"
_SPECULAR_TYPES = (TextureType.GLOSS, TextureType.ROUGHNESS)


@dataclass
class ConversionResult:
    """Outcome of converting one texture (or one packed set)."""

    input_path: str
    output_path: str
    success: bool = False
    error: Optional[str] = None
    mip_count: int = 0
    toksvig_applied: bool = False
    normal_map_used: Optional[str] = None
    duration: float = 0.0
    encoder_output: str = ""
    mipmaps_saved_path: Optional[str] = None
    diagnostics: List[DiagnosticEvent] = field(default_factory=list)


def _make_local_temp_dir(base_dir: str, prefix: str = "tmp_") -> str:
    """Create a writable temp directory without relying on tempfile ACL quirks."""
    os.makedirs(base_dir, exist_ok=True)
    for _ in range(256):
        candidate = os.path.join(base_dir, f"{prefix}{uuid4().hex}")
        try:
            os.makedirs(candidate, exist_ok=False)
            return candidate
        except FileExistsError:
            continue
    raise RuntimeError(f"Unable to allocate temp directory under {base_dir}")


def _apply_alpha_policy(image: np.ndarray, policy: AlphaPolicy) -> np.ndarray:
    if policy == AlphaPolicy.STRIP and has_alpha(image):
        return image[:, :, :3]
    if policy == AlphaPolicy.KEEP and image.ndim == 3 and image.shape[-1] == 3:
        opaque = np.ones(image.shape[:2] + (1,), dtype=image.dtype)
        return np.concatenate([image, opaque], axis=2)
    return image


def _copy_files(paths: List[str], dest_dir: str) -> str:
    os.makedirs(dest_dir, exist_ok=True)
    for path in paths:
        shutil.copy2(path, os.path.join(dest_dir, os.path.basename(path)))
    return dest_dir


class TextureConversionPipeline:
    """Per-texture conversion orchestrator."""

    def __init__(self, config: Optional[PipelineConfig] = None,
                 encoder: Optional[KtxEncoder] = None,
                 resolver: Optional[NormalMapResolver] = None,
                 diagnostics_callback: Optional[Callable[[DiagnosticEvent], None]] = None):
        self.config = config or PipelineConfig()
        self.encoder = encoder or KtxEncoder(self.config.encoder)
        self.resolver = resolver or default_normal_map_resolver()
        self.diagnostics_callback = diagnostics_callback
        self.mip_generator = MipGenerator()
        self.toksvig_processor = ToksvigProcessor()

    @property
    def scratch_root(self) -> str:
        return self.config.scratch_dir or tempfile.gettempdir()

    async def convert_texture_async(
        self,
        input_path: str,
        output_path: str,
        profile: Optional[MipGenerationProfile] = None,
        compression: Optional[CompressionSettings] = None,
        toksvig: Optional[ToksvigSettings] = None,
        save_separate_mipmaps: Optional[bool] = None,
        mipmap_output_dir: Optional[str] = None,
    ) -> ConversionResult:
        """Convert `input_path` into a KTX2 file at `output_path`.

        Without an explicit `profile`, the texture type comes from the
        filename, then from the decoded pixels when the name is inconclusive.
        """
        compression = compression or self.config.compression
        toksvig = toksvig if toksvig is not None else self.config.toksvig
        if save_separate_mipmaps is None:
            save_separate_mipmaps = self.config.save_separate_mipmaps

        diagnostics = Diagnostics(self.diagnostics_callback)
        result = ConversionResult(input_path=input_path, output_path=output_path)
        start = time.monotonic()
        loop = asyncio.get_running_loop()
        try:
            await self._require_encoder()
            image = await loop.run_in_executor(
                None, load_image, input_path, self.config.max_image_pixels
            )
            image = _apply_alpha_policy(image, AlphaPolicy(compression.alpha_policy))
            profile = profile or self.select_profile(input_path, image)
            diagnostics.info("pipeline", f"Converting {input_path} -> {output_path} "
                             f"(type={profile.texture_type.value}, format={compression.format})")

            debug_saved = False
            wants_toksvig = toksvig.enabled and profile.texture_type in _SPECULAR_TYPES
            if not compression.use_custom_mipmaps:
                if wants_toksvig:
                    diagnostics.error(
                        "toksvig", "Toksvig requires custom mipmaps; skipped because "
                        "the encoder generates mips itself",
                    )
                chain = [image]
            else:
                chain = await loop.run_in_executor(
                    None, self.mip_generator.generate_mipmaps, image, profile
                )
                diagnostics.info("mipmap", f"Generated {len(chain)} mip levels",
                                 mip_count=len(chain))

            if compression.use_custom_mipmaps and wants_toksvig:
                chain, debug_saved = await self._apply_toksvig(
                    chain, input_path, profile, toksvig, compression, result, diagnostics
                )

            result.mip_count = len(chain)
            srgb = compression.resolve_srgb(profile)
            if save_separate_mipmaps and not mipmap_output_dir:
                mipmap_output_dir = os.path.join(
                    os.path.dirname(output_path) or ".", f"{Path(input_path).stem}_mipmaps"
                )
            await self._encode_chain(
                chain, Path(input_path).stem, input_path, output_path, compression,
                srgb, has_alpha(chain[0]), result, diagnostics,
                copy_debug=compression.keep_debug_mipmaps and not debug_saved,
                copy_to=mipmap_output_dir if save_separate_mipmaps else None,
            )
            result.success = True
            diagnostics.info("pipeline", f"Converted {input_path} ({result.mip_count} mips)")
        except asyncio.CancelledError:
            diagnostics.warning("pipeline", f"Conversion of {input_path} cancelled")
            raise
        except Exception as exc:
            result.error = str(exc)
            diagnostics.error(
                "pipeline", f"Conversion failed for {input_path}: {exc}",
                error_type=type(exc).__name__,
            )
        finally:
            result.duration = time.monotonic() - start
            result.diagnostics = diagnostics.events
        return result

    async def convert_packed_async(
        self,
        packing: ChannelPackingSettings,
        output_path: str,
        compression: Optional[CompressionSettings] = None,
    ) -> List[ConversionResult]:
        """Pack channels into one container, or fall back to one file per channel."""
        compression = compression or self.config.compression
        diagnostics = Diagnostics(self.diagnostics_callback)
        packer = ChannelPackingPipeline(
            resolver=self.resolver, diagnostics=diagnostics,
            max_image_pixels=self.config.max_image_pixels,
        )
        try:
            packed = await packer.pack_channels_async(packing)
        except (InputError, ComputationError) as exc:
            diagnostics.warning(
                "packing", f"Channel packing failed ({exc}); converting channels independently"
            )
            return await self._convert_channels_independently(packing, output_path, compression)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            diagnostics.error("packing", f"Channel packing failed: {exc}",
                              error_type=type(exc).__name__)
            return [ConversionResult(
                input_path=";".join(src.source_path for _, src in packing.active_channels()),
                output_path=output_path, error=str(exc), diagnostics=diagnostics.events,
            )]
        return [await self._encode_packed(packed, output_path, compression, diagnostics)]

    def select_profile(self, input_path: str,
                       image: Optional[np.ndarray] = None) -> MipGenerationProfile:
        """Profile for the filename's texture type, or the image content's when generic."""
        tex_type = classify_texture(input_path)
        if tex_type == TextureType.GENERIC and image is not None:
            tex_type = classify_texture_by_content(image)
        return self.config.profile_for(tex_type)

    async def generate_mipmaps_only_async(
        self,
        input_path: str,
        output_dir: str,
        profile: Optional[MipGenerationProfile] = None,
    ) -> List[str]:
        """Write ``{base}_mip{N}.png`` for every level without encoding.

        Levels are written at ``config.mipmap_bit_depth`` bits per channel.
        """
        loop = asyncio.get_running_loop()
        image = await loop.run_in_executor(
            None, load_image, input_path, self.config.max_image_pixels
        )
        profile = profile or self.select_profile(input_path, image)
        chain = await loop.run_in_executor(
            None, self.mip_generator.generate_mipmaps, image, profile
        )
        paths = await self._write_levels(chain, output_dir, Path(input_path).stem,
                                         bits=self.config.mipmap_bit_depth)
        logger.info("Wrote %d mip levels for %s to %s", len(paths), input_path, output_dir)
        return paths

    async def _require_encoder(self):
        if not await self.encoder.is_available():
            raise ConfigurationError(
                "KTX encoder not available (install KTX-Software or set encoder.tool_path)"
            )

    def _resolve_normal_map(self, input_path: str, toksvig: ToksvigSettings) -> Optional[str]:
        if toksvig.normal_map_path:
            resolver = ChainedNormalMapResolver([
                ExplicitNormalMapResolver(toksvig.normal_map_path), self.resolver,
            ])
        else:
            resolver = self.resolver
        return resolver.resolve(input_path)

    async def _apply_toksvig(self, chain, input_path, profile, toksvig, compression,
                             result, diagnostics) -> Tuple[List[np.ndarray], bool]:
        """Correct the chain in place of the original; failures leave it untouched."""
        loop = asyncio.get_running_loop()
        is_gloss = profile.texture_type == TextureType.GLOSS
        if is_gloss and is_gloss_by_name(input_path) is False:
            is_gloss = False
        try:
            normal_path = self._resolve_normal_map(input_path, toksvig)
            if not normal_path:
                raise ComputationError(f"No normal map found for {input_path}")
            normal_map = await loop.run_in_executor(
                None, load_image, normal_path, self.config.max_image_pixels
            )
            corrected: ToksvigResult = await loop.run_in_executor(
                None, functools.partial(
                    self.toksvig_processor.apply_toksvig_correction,
                    chain, normal_map, toksvig, is_gloss,
                    capture_factors=compression.keep_debug_mipmaps,
                ),
            )
        except (ComputationError, InputError, ValueError) as exc:
            diagnostics.error(
                "toksvig", f"Toksvig correction skipped for {input_path}: {exc}",
                error_type=ComputationError.__name__,
            )
            return chain, False

        result.toksvig_applied = True
        result.normal_map_used = normal_path
        diagnostics.info(
            "toksvig", f"Toksvig applied ({'gloss' if is_gloss else 'roughness'}) "
            f"using {normal_path}",
            stats=[s.__dict__ for s in corrected.stats],
        )

        if not compression.keep_debug_mipmaps:
            return corrected.levels, False
        debug_dir = os.path.join(os.path.dirname(input_path) or ".", _DEBUG_DIR_NAME)
        base = strip_texture_suffix(Path(input_path).stem)
        try:
            await self._write_levels(chain, debug_dir, f"{base}_gloss")
            await self._write_levels(corrected.factors or [], debug_dir,
                                     f"{base}_toksvig_variance")
            await self._write_levels(corrected.levels, debug_dir, f"{base}_composite")
        except OSError as exc:
            diagnostics.warning("toksvig", f"Could not write Toksvig debug mipmaps: {exc}")
            return corrected.levels, False
        result.mipmaps_saved_path = debug_dir
        return corrected.levels, True

    async def _write_levels(self, chain: List[np.ndarray], out_dir: str,
                            base: str, bits: int = 8) -> List[str]:
        """Write levels in index order; each write is a cancellation point."""
        loop = asyncio.get_running_loop()
        os.makedirs(out_dir, exist_ok=True)
        paths = []
        for i, level in enumerate(chain):
            path = os.path.join(out_dir, f"{base}_mip{i}.png")
            write = loop.run_in_executor(None, save_image, level, path, bits)
            try:
                await asyncio.shield(write)
            except asyncio.CancelledError:
                # The worker thread cannot be interrupted; let it land before cleanup.
                await asyncio.wait([write])
                raise
            paths.append(path)
        return paths

    async def _encode_chain(self, chain, base, input_path, output_path, compression,
                            srgb, alpha, result, diagnostics,
                            copy_debug=False, copy_to=None):
        scratch_dir = _make_local_temp_dir(self.scratch_root, prefix="texconv_")
        try:
            mip_paths = await self._write_levels(chain, scratch_dir, base)
            diagnostics.info("encoder", f"Encoding {len(mip_paths)} levels with "
                             f"{self.encoder.flavor}", srgb=srgb, has_alpha=alpha)
            result.encoder_output = await self.encoder.encode(
                mip_paths, output_path, compression, srgb, alpha
            )
            if copy_debug:
                debug_dir = os.path.join(os.path.dirname(input_path) or ".", _DEBUG_DIR_NAME)
                try:
                    result.mipmaps_saved_path = _copy_files(mip_paths, debug_dir)
                except OSError as exc:
                    diagnostics.warning("pipeline", f"Could not copy debug mipmaps: {exc}")
            if copy_to:
                try:
                    result.mipmaps_saved_path = _copy_files(mip_paths, copy_to)
                except OSError as exc:
                    diagnostics.warning("pipeline", f"Could not save separate mipmaps: {exc}")
        finally:
            shutil.rmtree(scratch_dir, ignore_errors=True)

    async def _encode_packed(self, packed: PackedMipChain, output_path: str,
                             compression: CompressionSettings,
                             diagnostics: Diagnostics) -> ConversionResult:
        input_label = ";".join(packed.sources.values())
        result = ConversionResult(input_path=input_label, output_path=output_path,
                                  mip_count=packed.mip_count,
                                  toksvig_applied=packed.toksvig_applied,
                                  normal_map_used=packed.normal_map_used)
        start = time.monotonic()
        try:
            await self._require_encoder()
            levels = packed.levels
            if not compression.use_custom_mipmaps:
                levels = levels[:1]
                result.mip_count = 1
            first_source = next(iter(packed.sources.values()))
            await self._encode_chain(
                levels, f"{Path(output_path).stem}_packed", first_source, output_path,
                compression, False, True, result, diagnostics,
                copy_debug=compression.keep_debug_mipmaps,
            )
            result.success = True
            diagnostics.info("pipeline", f"Packed texture written: {output_path}")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            result.error = str(exc)
            diagnostics.error("pipeline", f"Packed conversion failed: {exc}",
                              error_type=type(exc).__name__)
        finally:
            result.duration = time.monotonic() - start
            result.diagnostics = diagnostics.events
        return result

    async def _convert_channels_independently(self, packing: ChannelPackingSettings,
                                              output_path: str,
                                              compression: CompressionSettings
                                              ) -> List[ConversionResult]:
        out = Path(output_path)
        results = []
        for slot, source in packing.active_channels():
            try:
                channel = source.channel
                profile = self.config.profile_for(channel_texture_type(channel))
                if source.filter:
                    profile = profile.copy(filter=FilterType(source.filter))
            except ValueError as exc:
                logger.error("Skipping %s channel %s: %s", slot, source.source_path, exc)
                results.append(ConversionResult(
                    input_path=source.source_path,
                    output_path=str(out.with_name(f"{out.stem}_{slot}{out.suffix}")),
                    error=str(exc),
                ))
                continue
            toksvig = packing.toksvig if source.apply_toksvig else ToksvigSettings(enabled=False)
            channel_output = str(out.with_name(f"{out.stem}_{channel.value}{out.suffix}"))
            results.append(await self.convert_texture_async(
                source.source_path, channel_output, profile, compression, toksvig,
                save_separate_mipmaps=False,
            ))
        return results
