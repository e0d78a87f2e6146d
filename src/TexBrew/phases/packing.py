"""Pack single-channel maps (AO, gloss, metallic, height) into one RGBA chain.

Every configured slot gets its own mip chain built with the profile of its
channel type, plus the channel-specific pass (Toksvig for gloss, darkening
for AO/metallic).  The chains are then interleaved level by level.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

from ..config import (
    AOProcessingMode,
    ChannelPackingMode,
    ChannelPackingSettings,
    ChannelSourceSettings,
    ChannelType,
    FilterType,
    MipGenerationProfile,
    ToksvigSettings,
    channel_texture_type,
)
from ..core import (
    Diagnostics,
    NormalMapResolver,
    default_normal_map_resolver,
    load_image,
    red_channel,
    save_image,
    to_uint8,
)
from ..errors import ComputationError, InputError
from .ao import AOProcessor
from .mipmap import MipGenerator
from .toksvig import ToksvigProcessor

logger = logging.getLogger("texture_conversion.packing")

_SLOT_INDEX = {"red": 0, "green": 1, "blue": 2, "alpha": 3}


@dataclass
class PackedMipChain:
    """Packed RGBA levels (uint8 HxWx4) and where each slot came from."""

    mode: ChannelPackingMode
    levels: List[np.ndarray] = field(default_factory=list)
    sources: Dict[str, str] = field(default_factory=dict)
    toksvig_applied: bool = False
    normal_map_used: Optional[str] = None

    @property
    def mip_count(self) -> int:
        return len(self.levels)


class ChannelPackingPipeline:
    """Build and interleave per-channel mip chains."""

    def __init__(self, resolver: Optional[NormalMapResolver] = None,
                 diagnostics: Optional[Diagnostics] = None,
                 max_image_pixels: int = 0):
        self.resolver = resolver or default_normal_map_resolver()
        self.diagnostics = diagnostics or Diagnostics()
        self.max_image_pixels = max_image_pixels
        self.mip_generator = MipGenerator()
        self.toksvig_processor = ToksvigProcessor()
        self.ao_processor = AOProcessor()

    async def pack_channels_async(self, settings: ChannelPackingSettings) -> PackedMipChain:
        """Pack every configured slot of `settings` into one RGBA mip chain.

        Raises `ComputationError` with fewer than two configured sources or
        invalid slot settings, and `InputError` when a source cannot be loaded.
        """
        active = settings.active_channels()
        if len(active) < 2:
            raise ComputationError(
                f"Channel packing needs at least 2 sources, got {len(active)} "
                f"(mode={settings.mode})"
            )
        self.diagnostics.info(
            "packing", f"Packing {len(active)} channels: {settings.describe()}",
            slots=[slot for slot, _ in active],
        )

        loop = asyncio.get_running_loop()
        outcomes = await asyncio.gather(*(
            loop.run_in_executor(None, self._process_channel, slot, source, settings.toksvig)
            for slot, source in active
        ))

        chains: Dict[str, List[np.ndarray]] = {}
        packed = PackedMipChain(mode=settings.packing_mode)
        for (slot, source), (chain, normal_used) in zip(active, outcomes):
            chains[slot] = chain
            packed.sources[slot] = source.source_path
            if normal_used:
                packed.toksvig_applied = True
                packed.normal_map_used = normal_used

        packed.levels = await loop.run_in_executor(
            None, self.assemble_levels, chains, settings
        )
        self.diagnostics.info(
            "packing", f"Packed {packed.mip_count} mip levels ({settings.mode})",
            mip_count=packed.mip_count, toksvig_applied=packed.toksvig_applied,
        )
        return packed

    async def pack_and_save_async(self, settings: ChannelPackingSettings,
                                  output_dir: str, base_name: str) -> List[str]:
        """Pack and write each level as ``{base_name}_packed_mip{N}.png``."""
        packed = await self.pack_channels_async(settings)
        os.makedirs(output_dir, exist_ok=True)
        loop = asyncio.get_running_loop()
        paths = []
        for i, level in enumerate(packed.levels):
            path = os.path.join(output_dir, f"{base_name}_packed_mip{i}.png")
            await loop.run_in_executor(None, save_image, level, path)
            paths.append(path)
        logger.info("Saved %d packed mip levels to %s", len(paths), output_dir)
        return paths

    def _process_channel(self, slot: str, source: ChannelSourceSettings,
                         toksvig: ToksvigSettings) -> Tuple[List[np.ndarray], Optional[str]]:
        try:
            image = load_image(source.source_path, max_pixels=self.max_image_pixels)
        except InputError as exc:
            self.diagnostics.error(
                "packing", f"Failed to load {slot} source {source.source_path}: {exc}",
                slot=slot, path=source.source_path,
            )
            raise

        try:
            channel = source.channel
            ao_mode = AOProcessingMode(source.ao_processing)
            profile = MipGenerationProfile.for_texture_type(channel_texture_type(channel))
            if source.filter:
                profile = profile.copy(filter=FilterType(source.filter))
            chain = self.mip_generator.generate_mipmaps(red_channel(image), profile)
        except ValueError as exc:
            raise ComputationError(f"Invalid {slot} channel settings: {exc}") from exc
        logger.info("  %s (%s): %d mip levels, filter=%s",
                    slot, channel.value, len(chain), profile.filter.value)

        normal_used = None
        if channel == ChannelType.GLOSS and source.apply_toksvig:
            chain, normal_used = self._apply_toksvig(chain, source, toksvig)
        if (channel in (ChannelType.AO, ChannelType.METALLIC)
                and ao_mode != AOProcessingMode.NONE):
            chain = self.ao_processor.process(
                chain, ao_mode, bias=source.ao_bias, percentile=source.ao_percentile,
            )
        return chain, normal_used

    def _apply_toksvig(self, chain: List[np.ndarray], source: ChannelSourceSettings,
                       toksvig: ToksvigSettings) -> Tuple[List[np.ndarray], Optional[str]]:
        if not toksvig.enabled:
            return chain, None
        normal_path = toksvig.normal_map_path or self.resolver.resolve(source.source_path)
        if not normal_path:
            self.diagnostics.warning(
                "toksvig", f"Normal map not found for {source.source_path}, "
                "skipping Toksvig correction",
            )
            return chain, None
        try:
            normal_map = load_image(normal_path, max_pixels=self.max_image_pixels)
            result = self.toksvig_processor.apply_toksvig_correction(
                chain, normal_map, toksvig, is_gloss=True
            )
        except (InputError, ValueError) as exc:
            self.diagnostics.error(
                "toksvig", f"Toksvig correction failed for {source.source_path}: {exc}",
                exc_info=exc,
            )
            return chain, None
        self.diagnostics.info("toksvig", f"Toksvig applied using {normal_path}",
                              normal_map=normal_path)
        return result.levels, normal_path

    @staticmethod
    def assemble_levels(chains: Dict[str, List[np.ndarray]],
                        settings: ChannelPackingSettings) -> List[np.ndarray]:
        """Interleave per-slot chains into uint8 RGBA levels."""
        level_count = min(len(chain) for chain in chains.values())
        fill = int(settings.default_fill_value)
        levels = []
        for i in range(level_count):
            h = max(chain[i].shape[0] for chain in chains.values())
            w = max(chain[i].shape[1] for chain in chains.values())
            packed = np.full((h, w, 4), fill, dtype=np.uint8)
            for slot, chain in chains.items():
                plane = to_uint8(red_channel(chain[i]))
                if plane.shape != (h, w):
                    plane = cv2.resize(plane, (w, h), interpolation=cv2.INTER_NEAREST)
                packed[:, :, _SLOT_INDEX[slot]] = plane
            if settings.packing_mode == ChannelPackingMode.OG and "red" in chains:
                # RGB = AO
                for slot in ("green", "blue"):
                    if slot not in chains:
                        packed[:, :, _SLOT_INDEX[slot]] = packed[:, :, 0]
            levels.append(packed)
        return levels
