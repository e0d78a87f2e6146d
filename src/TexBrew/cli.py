"""Command-line interface for texture conversion."""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from .config import (
    ChannelPackingMode,
    ChannelPackingSettings,
    ChannelType,
    PipelineConfig,
    TextureType,
    determine_packing_mode,
)
from .core import setup_logging, strip_texture_suffix

logger = logging.getLogger("texture_conversion")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_PARTIAL = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="TexBrew",
        description="Mipmap, Toksvig and channel-packing front end for KTX2 encoding",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  TexBrew -i brick_gloss.png -o out/ --toksvig
  TexBrew -i ./textures -o ./textures_ktx2 --format uastc --workers 8
  TexBrew --pack-ao rock_ao.png --pack-gloss rock_gloss.png -o out/
  TexBrew -i brick_albedo.png -o mips/ --mipmaps-only
  TexBrew --generate-config -c config.yaml
        """
    )
    parser.add_argument("--input", "-i", help="Input texture file or directory")
    parser.add_argument("--output", "-o", help="Output directory (or .ktx2 file for one input)")
    parser.add_argument("--config", "-c", help="Path to config YAML")
    parser.add_argument("--type", choices=[t.value for t in TextureType],
                        help="Force texture type instead of detecting it from the name")
    parser.add_argument("--format", choices=["etc1s", "uastc"], help="Compression format")
    parser.add_argument("--toksvig", action="store_true",
                        help="Apply Toksvig correction to gloss/roughness maps")
    parser.add_argument("--normal-map", help="Normal map used for Toksvig correction")
    parser.add_argument("--pack-ao", help="AO source for channel packing")
    parser.add_argument("--pack-gloss", help="Gloss source for channel packing")
    parser.add_argument("--pack-metallic", help="Metallic source for channel packing")
    parser.add_argument("--pack-height", help="Height source for channel packing")
    parser.add_argument("--mipmaps-only", action="store_true",
                        help="Write mip PNGs without running the encoder")
    parser.add_argument("--workers", type=int, help="Max parallel conversions")
    parser.add_argument("--keep-mipmaps", action="store_true",
                        help="Keep debug mip PNGs next to the source")
    parser.add_argument("--generate-config", action="store_true",
                        help="Generate default config.yaml")
    parser.add_argument("--log-level",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    return parser


def _load_config(args) -> PipelineConfig:
    if not args.config:
        return PipelineConfig()
    if not os.path.exists(args.config):
        raise ValueError(f"Config file not found: {args.config}")
    return PipelineConfig.from_yaml(args.config)


def _apply_overrides(config: PipelineConfig, args):
    if args.output:
        config.output_dir = args.output
    if args.input and os.path.isdir(args.input):
        config.input_dir = args.input
    if args.format:
        config.compression.format = args.format
        if args.format == "etc1s":
            config.compression.supercompression = "none"
    if args.toksvig:
        config.toksvig.enabled = True
    if args.normal_map:
        config.toksvig.normal_map_path = args.normal_map
        config.packing.toksvig.normal_map_path = args.normal_map
    if args.keep_mipmaps:
        config.compression.keep_debug_mipmaps = True
    if args.workers is not None:
        config.max_workers = args.workers
    if args.log_level:
        config.log_level = args.log_level


def _packing_from_args(args):
    paths = {
        ChannelType.AO: args.pack_ao,
        ChannelType.GLOSS: args.pack_gloss,
        ChannelType.METALLIC: args.pack_metallic,
        ChannelType.HEIGHT: args.pack_height,
    }
    if not any(paths.values()):
        return None
    mode = determine_packing_mode(args.pack_ao, args.pack_gloss,
                                  args.pack_metallic, args.pack_height)
    if mode == ChannelPackingMode.NONE:
        raise ValueError(
            "Channel packing needs at least two existing sources "
            "(AO+Gloss, +Metallic, or +Metallic+Height)"
        )
    settings = ChannelPackingSettings.create_default(
        mode, {ch: p for ch, p in paths.items() if p}
    )
    used = {src.channel for _, src in settings.active_channels()}
    for channel, path in paths.items():
        if path and channel not in used:
            logger.warning("%s source %s is not part of %s layout; ignored",
                           channel.value, path, mode.value.upper())
    return settings


def _single_output_path(config: PipelineConfig, input_path: str) -> str:
    out = config.output_dir
    if out.lower().endswith(config.output_extension):
        return out
    return os.path.join(out, Path(input_path).stem + config.output_extension)


async def _run(config: PipelineConfig, args, packing) -> int:
    from .batch import BatchProcessor
    from .pipeline import TextureConversionPipeline

    pipeline = TextureConversionPipeline(config)

    if packing is not None:
        first = next(src.source_path for _, src in packing.active_channels())
        base = strip_texture_suffix(Path(first).stem)
        out_path = os.path.join(config.output_dir,
                                f"{base}_{packing.mode}{config.output_extension}")
        results = await pipeline.convert_packed_async(packing, out_path, config.compression)
        for result in results:
            if result.success:
                print(f"OK   {result.output_path} ({result.mip_count} mips)")
            else:
                print(f"FAIL {result.output_path}: {result.error}")
        if all(r.success for r in results):
            return EXIT_OK
        return EXIT_PARTIAL if any(r.success for r in results) else EXIT_ERROR

    tex_type = TextureType(args.type) if args.type else None

    if os.path.isfile(args.input):
        profile = config.profile_for(tex_type) if tex_type else None
        if args.mipmaps_only:
            paths = await pipeline.generate_mipmaps_only_async(
                args.input, config.output_dir, profile
            )
            print(f"Wrote {len(paths)} mip levels to {config.output_dir}")
            return EXIT_OK
        result = await pipeline.convert_texture_async(
            args.input, _single_output_path(config, args.input), profile,
        )
        if not result.success:
            print(f"Error: {result.error}")
            return EXIT_ERROR
        print(f"OK   {result.output_path} ({result.mip_count} mips, {result.duration:.2f}s)")
        return EXIT_OK

    processor = BatchProcessor(pipeline, config)
    selector = (lambda _p: config.profile_for(tex_type)) if tex_type else None
    batch = await processor.process_directory_async(
        args.input, config.output_dir, config.compression,
        profile_selector=selector, toksvig=config.toksvig,
        max_parallelism=config.max_workers,
    )
    print(batch.summary())
    if batch.error:
        return EXIT_ERROR
    for path, error in batch.failures():
        print(f"FAIL {path}: {error}")
    return EXIT_PARTIAL if batch.failure_count else EXIT_OK


def main(argv=None):
    """Parse CLI arguments, run the conversion, and exit with a status code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.generate_config:
        config = PipelineConfig()
        dest = args.config or args.output or "config.yaml"
        if os.path.isdir(dest):
            dest = os.path.join(dest, "config.yaml")
        config.to_yaml(dest)
        print(f"Generated default {dest}")
        return

    # Ensure early validation warnings from from_yaml() are visible on stderr
    # before the full file-based logging is configured.
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    try:
        config = _load_config(args)
        _apply_overrides(config, args)
        packing = _packing_from_args(args)
        if packing is not None:
            config.packing = packing
    except ValueError as e:
        logger.error("%s", e)
        print(f"Error: {e}")
        sys.exit(EXIT_ERROR)

    if packing is None and (not args.input or not os.path.exists(args.input)):
        print(f"Error: Input not found: {args.input}")
        sys.exit(EXIT_ERROR)

    log_dir = config.output_dir
    if log_dir.lower().endswith(config.output_extension):
        log_dir = os.path.dirname(log_dir) or "."
    os.makedirs(log_dir, exist_ok=True)
    setup_logging(config.log_level, os.path.join(log_dir, "texture_conversion.log"))

    try:
        config.validate()
    except ValueError as e:
        logger.error(str(e))
        print(f"Error: {e}")
        sys.exit(EXIT_ERROR)

    try:
        code = asyncio.run(_run(config, args, packing))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user.")
        sys.exit(130)
    except (ValueError, OSError) as e:
        logger.error(str(e))
        print(f"Error: {e}")
        sys.exit(EXIT_ERROR)
    sys.exit(code)


if __name__ == "__main__":
    main()
