"""
Batch processing of many image files with multiprocessing support.
Each file is loaded fresh and transformed independently, so runs are repeatable.
"""

import logging
from pathlib import Path
from typing import Optional, Callable, List, Tuple
from multiprocessing import Pool, cpu_count
from functools import partial

from halftone_lib import HalftoneProcessor, ProcessingSettings
from utils import IMAGE_EXTENSIONS, load_image_rgba, save_png

logger = logging.getLogger(__name__)


def collect_image_files(directory) -> List[Path]:
    """Supported image files directly inside `directory`, sorted by name."""
    directory = Path(directory)
    return sorted(p for p in directory.iterdir()
                  if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS)


def output_path_for(input_path: Path, output_dir: Path) -> Path:
    return Path(output_dir) / f"{Path(input_path).stem}_dtf.png"


def process_image_file(input_path, output_path, settings: ProcessingSettings) -> Path:
    """Load, transform and save one image as PNG."""
    image = load_image_rgba(input_path)
    result = HalftoneProcessor(settings).process(image)
    return save_png(result, output_path)


def process_single_file(paths: Tuple[Path, Path], settings: ProcessingSettings) -> bool:
    """
    Process a single file. Used by multiprocessing pool.
    Must be a top-level function for pickling.

    Args:
        paths: (input_path, output_path)
        settings: Processing settings

    Returns:
        True if successful, False if failed
    """
    input_path, output_path = paths
    try:
        process_image_file(input_path, output_path, settings)

        output_path = Path(output_path)
        if not output_path.exists() or output_path.stat().st_size == 0:
            raise ValueError(f"{output_path} not saved properly")
        return True
    except (OSError, ValueError) as e:
        logger.error(f"Error processing {input_path}: {e}")
        return False


class BatchProcessor:
    """
    Handles folders of images with batched parallel processing.
    """

    def __init__(self,
                 num_workers: Optional[int] = None,
                 progress_callback: Optional[Callable[[float, str], None]] = None):
        """
        Initialize batch processor.

        Args:
            num_workers: Number of parallel workers. Defaults to min(4, CPU count - 1).
            progress_callback: Function to call with (progress_fraction, status_message).
        """
        if num_workers is None:
            num_workers = min(4, max(1, cpu_count() - 1))
        self.num_workers = max(1, num_workers)
        self.progress_callback = progress_callback

    def _report_progress(self, fraction: float, message: str):
        """Report progress if callback is set."""
        if self.progress_callback:
            self.progress_callback(fraction, message)

    def _map(self, func, items: list) -> List[bool]:
        if self.num_workers == 1:
            return [func(item) for item in items]
        with Pool(processes=self.num_workers) as pool:
            return pool.map(func, items)

    def process_files(self,
                      pairs: List[Tuple[Path, Path]],
                      settings: ProcessingSettings,
                      batch_size: int = 16) -> List[Path]:
        """
        Transform every (input, output) pair.

        Args:
            pairs: List of (input_path, output_path)
            settings: Processing settings applied to every file
            batch_size: Number of files handed to the pool at once

        Returns:
            Input paths that still failed after retries
        """
        total = len(pairs)
        failed = []
        if total == 0:
            self._report_progress(1.0, "No images to process")
            return failed

        self._report_progress(0.0, f"Processing {total} images...")
        process_func = partial(process_single_file, settings=settings)

        processed_count = 0
        for batch_start in range(0, total, batch_size):
            batch = pairs[batch_start:batch_start + batch_size]
            results = self._map(process_func, batch)

            # Retry failures sequentially
            for pair, success in zip(batch, results):
                if success:
                    continue
                logger.warning(f"Retrying {Path(pair[0]).name}...")
                if not any(process_single_file(pair, settings) for _ in range(2)):
                    failed.append(Path(pair[0]))

            processed_count += len(batch)
            self._report_progress(processed_count / total,
                                  f"Processed {processed_count}/{total} images")

        if failed:
            logger.error(f"{len(failed)} of {total} images failed")
        return failed

    def process_directory(self, input_dir, output_dir, settings: ProcessingSettings) -> List[Path]:
        """Process every supported image in input_dir into output_dir/<stem>_dtf.png."""
        files = collect_image_files(input_dir)
        pairs = [(f, output_path_for(f, output_dir)) for f in files]
        return self.process_files(pairs, settings)
