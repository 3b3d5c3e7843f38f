"""SquashFS image creation with ``mksquashfs``."""

from dataclasses import dataclass
import logging
import pathlib
import time

from ruby_packer.errors import ExternalToolError
from ruby_packer.runner import ToolRunner


@dataclass(frozen=True, slots=True)
class EmbeddedImage:
    """Compressed filesystem image destined for the interpreter binary.

    :ivar data: Raw image bytes.
    """

    data: bytes

    @property
    def length(self) -> int:
        return len(self.data)


def compress_tree(
    *,
    work_dir: pathlib.Path,
    image_path: pathlib.Path,
    runner: ToolRunner,
    logger: logging.Logger,
) -> EmbeddedImage:
    """Compress ``work_dir`` into a SquashFS image and read it back.

    ``mksquashfs -version`` runs first as a toolchain smoke test. Any stale
    image is removed beforehand since mksquashfs appends to existing images.

    :param work_dir: Directory tree to compress.
    :param image_path: Where mksquashfs writes the image.
    :param runner: Runner for mksquashfs.
    :param logger: Logger for progress output.
    :returns: The image.
    :raises ExternalToolError: If mksquashfs is missing, fails, or leaves no
        image behind.
    """

    runner.run(["mksquashfs", "-version"], cwd=image_path.parent)

    image_path.unlink(missing_ok=True)
    t0: float = time.perf_counter()
    cmd: list[str] = ["mksquashfs", str(work_dir), str(image_path)]
    output: str = runner.run(cmd, cwd=image_path.parent)
    t1: float = time.perf_counter()

    if image_path.is_file() is False or image_path.stat().st_size == 0:
        raise ExternalToolError(cmd, 0, f"{output}no image written to {image_path}")
    image: EmbeddedImage = EmbeddedImage(data=image_path.read_bytes())
    logger.info(
        f"rubyc: image built ({image.length / (1024 * 1024):.1f} MiB) in {t1 - t0:.2f}s"
    )
    return image
