"""Command-line interface for the texture converter."""

import argparse
import logging
import os
import signal
import sys

from .config import (
    AO_MODES, CHANNEL_MODES, ENCODE_MODES, HISTOGRAM_MODES, PACKING_MODES, PipelineConfig,
    TextureType,
)
from .core import (
    AlignmentError, ConversionCancelledError, ExternalToolFailureError, InvalidDimensionError,
    IOFailureError, KERNELS, MalformedContainerError, TextureConversionError, setup_logging,
)

logger = logging.getLogger("texture_pipeline")

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_TOOL = 2
EXIT_CONTAINER = 3
EXIT_IO = 4
EXIT_CANCELLED = 130


def exit_code_for(exc: BaseException) -> int:
    """Map a conversion failure to the process exit code."""
    if isinstance(exc, (ConversionCancelledError, KeyboardInterrupt)):
        return EXIT_CANCELLED
    if isinstance(exc, ExternalToolFailureError):
        return EXIT_TOOL
    if isinstance(exc, (MalformedContainerError, AlignmentError)):
        return EXIT_CONTAINER
    if isinstance(exc, (IOFailureError, InvalidDimensionError)):
        return EXIT_IO
    return EXIT_CONFIG


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ktxforge",
        description="Convert a texture into a KTX2 container with range metadata",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ktxforge -i rock_albedo.png -o rock_albedo.ktx2
  ktxforge -i rock_roughness.png --normal rock_normal.png -c config.yaml
  ktxforge -i mask.png --histogram high_quality --encode etc1s
  ktxforge -i rock_albedo.png --auto-mips
  ktxforge -i rock_albedo.png --pack --pack-mode ogm
  ktxforge --generate-config config.yaml
        """
    )
    parser.add_argument("--input", "-i", help="Source texture")
    parser.add_argument("--output", "-o",
                        help="Destination .ktx2 (default: input with .ktx2 extension)")
    parser.add_argument("--config", "-c", help="Path to config YAML")
    parser.add_argument("--normal", help="Normal map for Toksvig roughness correction")
    parser.add_argument("--type", dest="texture_type",
                        choices=[t.value for t in TextureType],
                        help="Texture type (default: detect from filename)")
    parser.add_argument("--gloss", action="store_true",
                        help="Treat the input as a gloss map (inverted roughness)")
    parser.add_argument("--kernel", choices=["auto"] + sorted(KERNELS),
                        help="Mip resampling kernel")
    parser.add_argument("--auto-mips", action="store_true",
                        help="Let the encoder generate mips (skips range analysis)")
    parser.add_argument("--histogram", choices=list(HISTOGRAM_MODES),
                        help="Range analysis mode")
    parser.add_argument("--per-channel", action="store_true",
                        help="Analyze R, G and B independently")
    parser.add_argument("--encode", choices=list(ENCODE_MODES), help="Block compression mode")
    parser.add_argument("--no-supercompression", action="store_true",
                        help="Disable zstd supercompression (uastc only)")
    pack = parser.add_argument_group("channel packing")
    pack.add_argument("--pack", action="store_true",
                      help="Pack the material's AO/gloss/metallic/height maps found "
                           "next to --input into one RGBA texture")
    pack.add_argument("--pack-mode", choices=list(PACKING_MODES),
                      help="Channel layout (default: widest layout the maps allow)")
    pack.add_argument("--ao", dest="ao_map", help="Occlusion map (overrides detection)")
    pack.add_argument("--gloss-map", help="Gloss map (overrides detection)")
    pack.add_argument("--metallic", dest="metallic_map",
                      help="Metallic map (overrides detection)")
    pack.add_argument("--height", dest="height_map",
                      help="Height map (overrides detection)")
    parser.add_argument("--ao-mode", choices=list(AO_MODES),
                        help="Darkening applied to occlusion mips")
    parser.add_argument("--log-level",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--log-file", help="Also log to this file (rotated)")
    parser.add_argument("--generate-config", metavar="PATH",
                        help="Write a default config YAML to PATH and exit")
    return parser


def _apply_overrides(config: PipelineConfig, args: argparse.Namespace):
    if args.kernel:
        config.mipmap.kernel = args.kernel
    if args.auto_mips:
        config.mipmap.enabled = False
    if args.histogram:
        config.histogram.mode = args.histogram
    if args.per_channel:
        config.histogram.channel_mode = CHANNEL_MODES[1]
    if args.encode:
        config.compression.encode = args.encode
    if args.no_supercompression:
        config.compression.supercompression = False
    if args.ao_mode:
        config.ao.mode = args.ao_mode
        config.packing.ao_mode = args.ao_mode
    if args.pack_mode:
        config.packing.mode = args.pack_mode
    if args.log_level:
        config.log_level = args.log_level
    if args.log_file:
        config.log_file = args.log_file


def main(argv=None):
    """Parse CLI arguments, convert one texture and exit with a status code."""
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        # argparse exits with 2 on usage errors; 2 is reserved for tool failures.
        if exc.code:
            sys.exit(EXIT_CONFIG)
        raise

    if args.generate_config:
        dest = args.generate_config
        if os.path.isdir(dest):
            dest = os.path.join(dest, "config.yaml")
        PipelineConfig().to_yaml(dest)
        print(f"Generated default {dest}")
        sys.exit(EXIT_OK)

    # Make config warnings visible before full logging is configured.
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    if args.config:
        if not os.path.exists(args.config):
            print(f"Error: Config file not found: {args.config}")
            sys.exit(EXIT_CONFIG)
        try:
            config = PipelineConfig.from_yaml(args.config)
        except ValueError as e:
            print(f"Error: Invalid config: {e}")
            sys.exit(EXIT_CONFIG)
    else:
        config = PipelineConfig()

    if not args.input:
        print("Error: --input is required")
        sys.exit(EXIT_CONFIG)
    _apply_overrides(config, args)
    try:
        config.validate()
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(EXIT_CONFIG)

    setup_logging(config.log_level, config.log_file or None, force=True)

    suffix = "_packed.ktx2" if args.pack else ".ktx2"
    output = args.output or os.path.splitext(args.input)[0] + suffix
    texture_type = TextureType.GLOSS if args.gloss else args.texture_type

    from .pipeline import TextureConverter
    converter = TextureConverter(config)

    def _sigterm_handler(signum, frame):
        logger.warning("Received SIGTERM. Cancelling conversion...")
        converter.request_cancel()

    previous_handler = None
    if hasattr(signal, "SIGTERM"):
        previous_handler = signal.signal(signal.SIGTERM, _sigterm_handler)

    try:
        if args.pack:
            sources = {name: path for name, path in (
                ("ao", args.ao_map), ("gloss", args.gloss_map),
                ("metallic", args.metallic_map), ("height", args.height_map),
            ) if path}
            result = converter.convert_packed(args.input, output, sources,
                                              normal_path=args.normal)
        else:
            result = converter.convert(args.input, output, texture_type=texture_type,
                                       normal_path=args.normal)
    except KeyboardInterrupt:
        converter.request_cancel()
        logger.warning("Interrupted by user.")
        sys.exit(EXIT_CANCELLED)
    except TextureConversionError as exc:
        code = exit_code_for(exc)
        if code == EXIT_CANCELLED:
            logger.warning("Conversion cancelled: %s", exc)
        else:
            print(f"Error: {exc}")
        sys.exit(code)
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGTERM, previous_handler)

    print(f"Wrote {result.output_path} ({result.mip_levels} level(s), "
          f"{result.metadata_size} metadata bytes)")
    sys.exit(EXIT_OK)


if __name__ == "__main__":
    main()
