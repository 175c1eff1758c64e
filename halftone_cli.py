#!/usr/bin/env python3
"""
CLI module for DTF Halftone - Command-Line Interface

Provides command-line interface for turning images (or folders of images) into
print-ready DTF halftone PNGs. Uses Rich for terminal output.
"""

import sys
import logging
import argparse
import json
from pathlib import Path
from typing import Optional, Dict, Any

# Rich imports for terminal output
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn
from rich.panel import Panel

# Local imports
from halftone_lib import HalftoneShape, ColorMode, ProcessingSettings, HalftoneProcessor
from batch_processor import BatchProcessor, collect_image_files, output_path_for
from suggestion_service import GeminiSuggestionClient, SuggestionError
from utils import PresetManager, hex_to_rgb, validate_image_file, load_image_rgba, save_png
from config_manager import ConfigManager


# Initialize Rich console
console = Console()

logger = logging.getLogger('dtf_halftone')


def setup_logging(verbose: bool = False, quiet: bool = False, log_file: Optional[str] = None):
    """
    Setup logging with Rich handler for terminal output.

    Args:
        verbose: Enable verbose (DEBUG) logging
        quiet: Suppress all but ERROR messages
        log_file: Optional path to log file
    """
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handlers = []

    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=True,
        rich_tracebacks=True
    )
    handlers.append(rich_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers
    )

    logger.setLevel(level)
    return logger


class CLIProgressCallback:
    """
    Progress callback for batch processing that uses Rich progress bars.
    Compatible with BatchProcessor.progress_callback signature.
    """

    def __init__(self):
        self.progress = None
        self.task = None

    def __enter__(self):
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console
        )
        self.progress.__enter__()
        self.task = self.progress.add_task("Processing images...", total=100)
        return self

    def __exit__(self, *args):
        if self.progress:
            self.progress.__exit__(*args)

    def update(self, fraction: float, message: str):
        """
        Update progress bar.

        Args:
            fraction: Progress fraction (0.0 to 1.0)
            message: Status message
        """
        if self.progress and self.task is not None:
            self.progress.update(self.task, completed=fraction * 100, description=message)


# ==================== Config Schema & Validation ====================

VALID_MODES = ["image", "folder"]


class ConfigValidationError(Exception):
    """Raised when config validation fails."""
    pass


def _validate_processing(proc: Dict[str, Any], errors: list):
    params = ProcessingSettings.get_parameter_info()
    for key, value in proc.items():
        info = params.get(key)
        if info is None:
            errors.append(f"Unknown processing parameter: '{key}'")
            continue

        kind = info['type']
        if kind in ('int', 'float'):
            if isinstance(value, bool):
                errors.append(f"'processing.{key}' must be a number")
                continue
            try:
                number = float(value)
            except (ValueError, TypeError):
                errors.append(f"'processing.{key}' must be a number")
                continue
            if not info['min'] <= number <= info['max']:
                errors.append(f"'processing.{key}' must be between {info['min']} and {info['max']}")
        elif kind == 'choice':
            try:
                if key == 'shape':
                    HalftoneShape.parse(value)
                else:
                    ColorMode.parse(value)
            except ValueError:
                errors.append(f"Invalid {key}: '{value}'. Must be one of: {info['choices']}")
        elif kind == 'bool' and not isinstance(value, bool):
            errors.append(f"'processing.{key}' must be true or false")
        elif kind == 'color':
            try:
                hex_to_rgb(value)
            except (ValueError, AttributeError):
                errors.append(f"'processing.{key}' must be a hex color like '#rrggbb', got {value!r}")


def validate_config(config: Dict[str, Any], config_path: Path) -> Dict[str, Any]:
    """
    Validate configuration and return normalized config.

    Args:
        config: Raw config dictionary
        config_path: Path to config file (for resolving relative paths)

    Returns:
        Validated and normalized config

    Raises:
        ConfigValidationError: If validation fails
    """
    errors = []

    if not isinstance(config, dict):
        raise ConfigValidationError("Configuration validation failed:\n  • top level must be an object")

    if "input" not in config:
        errors.append("Missing required field: 'input'")

    if "output" not in config:
        errors.append("Missing required field: 'output'")

    mode = config.get("mode")
    if mode and mode not in VALID_MODES:
        errors.append(f"Invalid mode: '{mode}'. Must be one of: {VALID_MODES}")

    if "processing" in config:
        proc = config["processing"]
        if not isinstance(proc, dict):
            errors.append("'processing' must be an object/dictionary")
        else:
            _validate_processing(proc, errors)

    if "preset" in config and not isinstance(config["preset"], str):
        errors.append("'preset' must be a preset name")

    if "workers" in config:
        workers = config["workers"]
        if isinstance(workers, bool) or not isinstance(workers, int) or workers <= 0:
            errors.append("'workers' must be a positive integer")

    if "suggestion" in config:
        sug = config["suggestion"]
        if not isinstance(sug, dict):
            errors.append("'suggestion' must be an object/dictionary")
        elif "enabled" in sug and not isinstance(sug["enabled"], bool):
            errors.append("'suggestion.enabled' must be true or false")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  • {e}" for e in errors)
        raise ConfigValidationError(error_msg)

    # Normalize paths (resolve relative to config file)
    config_dir = config_path.parent
    for key in ("input", "output"):
        path = Path(config[key])
        if not path.is_absolute():
            path = (config_dir / path).resolve()
        config[key] = str(path)

    input_path = Path(config["input"])
    if not input_path.exists():
        raise ConfigValidationError(f"Input file/directory not found: {config['input']}")
    if mode == "folder" and not input_path.is_dir():
        raise ConfigValidationError(f"Mode 'folder' needs a directory as input: {input_path}")
    if mode == "image" and input_path.is_dir():
        raise ConfigValidationError(f"Mode 'image' needs a file as input: {input_path}")

    config.setdefault("mode", None)  # Will be auto-detected
    config.setdefault("processing", {})
    config.setdefault("preset", None)
    config.setdefault("workers", None)
    config.setdefault("suggestion", {"enabled": False})
    config["suggestion"].setdefault("enabled", False)

    return config


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load and validate configuration from JSON file.

    Args:
        config_path: Path to JSON config file

    Returns:
        Validated config dictionary

    Raises:
        ConfigValidationError: If validation fails
    """
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigValidationError(f"Invalid JSON in config file:\n  Line {e.lineno}: {e.msg}")
    except OSError as e:
        raise ConfigValidationError(f"Failed to load config file: {e}")

    return validate_config(config, config_path)


def detect_mode(input_path: Path) -> str:
    """
    Auto-detect processing mode based on input path.

    Args:
        input_path: Input file or directory path

    Returns:
        Mode string: "image" or "folder"
    """
    if input_path.is_dir():
        return "folder"
    if validate_image_file(input_path):
        return "image"
    raise ConfigValidationError(f"Cannot determine mode for file extension: {input_path.suffix.lower()}")


def build_settings(config: Dict[str, Any],
                   app_config: ConfigManager,
                   presets: Optional[PresetManager] = None) -> ProcessingSettings:
    """
    Resolve settings: stored defaults, then the named preset, then the
    job's own 'processing' overrides.
    """
    base = app_config.get_default_settings().to_dict()

    preset_name = config.get("preset")
    if preset_name:
        presets = presets or PresetManager()
        preset = presets.get_preset(preset_name)
        if preset is None:
            raise ConfigValidationError(f"Preset not found: {preset_name}")
        logger.info(f"Using preset: [cyan]{preset_name}[/]")
        base.update(preset.to_dict())

    base.update(config.get("processing", {}))
    try:
        return ProcessingSettings.from_dict(base)
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(f"Invalid processing settings: {e}") from e


def apply_suggestion(settings: ProcessingSettings, image, suggestion_config: Dict[str, Any],
                     app_config: ConfigManager) -> ProcessingSettings:
    """Ask the vision model for shape and grid size; keep settings on failure."""
    client = GeminiSuggestionClient(
        model=suggestion_config.get("model") or app_config.get("suggestion", "model"),
        timeout=suggestion_config.get("timeout") or app_config.get("suggestion", "timeout", default=30)
    )
    try:
        result = client.suggest(image)
    except SuggestionError as e:
        logger.warning(f"Skipping suggestion: {e}")
        return settings

    logger.info(f"Suggestion: [yellow]{result.suggested_shape.value}[/], "
                f"grid {result.suggested_grid_size} [dim]({result.reasoning})[/]")
    return settings.with_suggestion(result)


# ==================== Processing ====================

def process_single_image(config: Dict[str, Any], settings: ProcessingSettings,
                         app_config: ConfigManager) -> bool:
    """
    Process a single image into a halftone PNG.

    Returns:
        True if successful, False otherwise
    """
    try:
        input_path = Path(config["input"])
        output_path = Path(config["output"])

        logger.info(f"Loading image: [cyan]{input_path.name}[/]")
        image = load_image_rgba(input_path)
        logger.info(f"Image size: [cyan]{image.width}x{image.height}[/]")

        if config["suggestion"]["enabled"]:
            settings = apply_suggestion(settings, image, config["suggestion"], app_config)

        settings = settings.clamped()
        logger.info(f"Applying halftone: [cyan]{settings.shape.value}[/] grid={settings.grid_size} "
                    f"intensity={settings.intensity:.2f}{' (inverted)' if settings.invert else ''}")
        result = HalftoneProcessor(settings).process(image)

        logger.info(f"Saving to: [cyan]{output_path}[/]")
        save_png(result, output_path)

        app_config.add_recent_file(str(input_path))
        app_config.update_last_path("image", str(input_path))
        app_config.update_last_path("save", str(output_path))

        size_kb = output_path.stat().st_size / 1024
        logger.info(f"[bold green]✓ Image saved successfully![/] ({size_kb:.1f} KB)")
        return True

    except (OSError, ValueError) as e:
        logger.error(f"Failed to process image: {e}", exc_info=True)
        return False


def process_folder(config: Dict[str, Any], settings: ProcessingSettings,
                   app_config: ConfigManager) -> bool:
    """
    Process every image in a folder. Suggestions are not applied per file.

    Returns:
        True if every image succeeded, False otherwise
    """
    input_dir = Path(config["input"])
    output_dir = Path(config["output"])

    files = collect_image_files(input_dir)
    if not files:
        logger.error(f"No images found in: {input_dir}")
        return False
    logger.info(f"Found [cyan]{len(files)}[/] images in {input_dir}")

    if config["suggestion"]["enabled"]:
        logger.warning("Suggestions are ignored in folder mode")

    settings = settings.clamped()

    progress_callback = CLIProgressCallback()
    processor = BatchProcessor(num_workers=config.get("workers"),
                               progress_callback=progress_callback.update)
    with progress_callback:
        failed = processor.process_directory(input_dir, output_dir, settings)

    app_config.update_last_path("save", str(output_path_for(files[0], output_dir)))
    if failed:
        for path in failed:
            logger.error(f"Failed: {path}")
        return False

    logger.info(f"[bold green]✓ {len(files)} images saved to {output_dir}[/]")
    return True


def show_banner():
    """Display application banner."""
    banner = """
[bold cyan]╔═══════════════════════════════════════╗[/]
[bold cyan]║[/]    [bold white]DTF Halftone CLI[/] [dim]- v1.0[/]          [bold cyan]║[/]
[bold cyan]║[/]  Breathable halftone for DTF prints   [bold cyan]║[/]
[bold cyan]╚═══════════════════════════════════════╝[/]
"""
    console.print(banner)


def show_help():
    """Display detailed help information."""
    help_text = """
[bold cyan]DTF Halftone CLI - Usage[/]

[bold]Basic Usage:[/]
  dtf-halftone <job.json>          Process with JSON job file
  dtf-halftone --help              Show this help
  dtf-halftone --example-config    Generate example job file

[bold]Options:[/]
  --verbose, -v     Enable verbose output
  --quiet, -q       Suppress all but error messages
  --log-file FILE   Write log to file
  --app-config FILE Preferences file (default config.json)
  --save-defaults   Store the job's settings as the new defaults
  --recent          List recently processed files
  --clear-recent    Forget recently processed files

[bold]Suggestions:[/]
  Set "suggestion": {"enabled": true} and GEMINI_API_KEY to let a vision
  model pick the shape and grid size.
"""
    console.print(help_text)

    console.print("  [bold]Shapes:[/]")
    for shape in HalftoneShape:
        console.print(f"    • [cyan]{shape.value}[/]")

    console.print("\n  [bold]Processing parameters:[/]")
    for key, info in ProcessingSettings.get_parameter_info().items():
        console.print(f"    • [cyan]{key}[/] (default {info['default']}): {info['description']}")
    console.print()


def generate_example_config():
    """Generate and print an example job file."""
    example = {
        "_comment": "DTF Halftone job file",
        "input": "path/to/input.png",
        "output": "path/to/output.png",
        "mode": "image",
        "processing": ProcessingSettings().to_dict(),
        "_comment_preset": "Optional: name of a preset in presets.json, overridden by 'processing'",
        "suggestion": {
            "enabled": False,
            "model": "gemini-2.5-flash"
        }
    }

    console.print("\n[bold cyan]Example Configuration:[/]\n")
    console.print(Panel(json.dumps(example, indent=4), title="job.json", border_style="cyan"))
    console.print("\n[dim]Save this to a .json file and modify as needed.[/]\n")


def show_recent(app_config: ConfigManager):
    """List recently processed inputs and the last output directory."""
    recent = app_config.get_recent_files()
    if not recent:
        console.print("[dim]No recent files.[/]")
    else:
        console.print("[bold cyan]Recent files:[/]")
        for path in recent:
            console.print(f"  • {path}")
    last_save = app_config.get_last_path("save")
    if last_save:
        console.print(f"[bold cyan]Last output directory:[/] {last_save}")


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="DTF Halftone CLI - breathable halftone knockout for DTF prints",
        add_help=False
    )

    parser.add_argument('config', nargs='?', help='Path to JSON job file')
    parser.add_argument('--help', '-h', action='store_true', help='Show help')
    parser.add_argument('--example-config', action='store_true', help='Generate example config')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--quiet', '-q', action='store_true', help='Quiet mode (errors only)')
    parser.add_argument('--log-file', type=str, help='Log to file')
    parser.add_argument('--app-config', type=str, default='config.json', help='Preferences file')
    parser.add_argument('--recent', action='store_true', help='List recently processed files')
    parser.add_argument('--clear-recent', action='store_true', help='Forget recently processed files')
    parser.add_argument('--save-defaults', action='store_true',
                        help='Store this job\'s settings as the new defaults')

    args = parser.parse_args(argv)

    if args.help:
        show_banner()
        show_help()
        sys.exit(0)

    if args.example_config:
        show_banner()
        generate_example_config()
        sys.exit(0)

    if args.recent or args.clear_recent:
        app_config = ConfigManager(args.app_config)
        if args.clear_recent:
            app_config.clear_recent_files()
            app_config.save()
            console.print("[green]✓[/] Recent files cleared")
        else:
            show_recent(app_config)
        sys.exit(0)

    setup_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.log_file)

    if not args.quiet:
        show_banner()

    if not args.config:
        console.print("[bold red]Error:[/] No job file specified.\n")
        console.print("Usage: dtf-halftone <job.json>")
        console.print("       dtf-halftone --help\n")
        sys.exit(1)

    config_path = Path(args.config)
    if not config_path.exists():
        logger.error(f"Job file not found: {config_path}")
        sys.exit(1)

    logger.info(f"Loading job from: [cyan]{config_path}[/]")
    app_config = ConfigManager(args.app_config)

    try:
        config = load_config(config_path)
        if not config["mode"]:
            config["mode"] = detect_mode(Path(config["input"]))
            logger.info(f"Auto-detected mode: [cyan]{config['mode']}[/]")
        settings = build_settings(config, app_config)
    except ConfigValidationError as e:
        logger.error(f"[bold red]{e}[/]")
        sys.exit(1)

    logger.info("[green]✓[/] Configuration validated")
    logger.info(f"Input:  [cyan]{config['input']}[/]")
    logger.info(f"Output: [cyan]{config['output']}[/]")
    logger.info(f"Mode:   [cyan]{config['mode']}[/]")
    logger.info(f"Color:  [yellow]{settings.color_mode.value}[/]"
                f"{' ' + settings.mono_color if settings.color_mode == ColorMode.MONO else ''}, "
                f"black threshold {settings.black_threshold}")

    if config["mode"] == "image":
        success = process_single_image(config, settings, app_config)
    else:
        success = process_folder(config, settings, app_config)

    if success and args.save_defaults:
        app_config.set_default_settings(settings.clamped())
        logger.info("[green]✓[/] Saved settings as defaults")

    app_config.save()

    if success:
        logger.info("[bold green]✓ Processing complete![/]")
        sys.exit(0)
    else:
        logger.error("[bold red]✗ Processing failed![/]")
        sys.exit(1)


if __name__ == "__main__":
    main()
