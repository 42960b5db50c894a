import io
import logging
import uuid
from typing import Dict, Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from common.exceptions import DecodeError
from common.job_schema import Derivative, Job, PipelineConfig, SizeTier
from common.resize import compute_target_size

logger = logging.getLogger(__name__)

JPEG_CONTENT_TYPE = "image/jpeg"


def _open_image(source_bytes: bytes, source_name: str) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(source_bytes))
        img.load()
        # phone cameras store rotation as an EXIF tag; bake it into the pixels
        img = ImageOps.exif_transpose(img)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as e:
        raise DecodeError(f"Unable to decode image {source_name}: {e}") from e
    return img


def new_blob_name() -> str:
    return f"{uuid.uuid4()}.jpeg"


def generate_variant(source_bytes: bytes, tier: SizeTier, source_name: str) -> Derivative:
    """
    Builds one size tier of the source image in memory.

    The result is always a JPEG under a fresh name; nothing is written here.
    """
    img = _open_image(source_bytes, source_name)

    target = compute_target_size(img.width, img.height, tier.max_side)
    if target != img.size:
        img = img.resize(target, Image.Resampling.LANCZOS)

    # JPEG has no alpha or palette
    if img.mode != "RGB":
        img = img.convert("RGB")

    buffer = io.BytesIO()
    img.save(buffer, format="JPEG")

    return Derivative(
        blob_name=new_blob_name(),
        tier=tier,
        data=buffer.getvalue(),
        metadata={"type": tier.tag, "original": source_name},
        width=img.width,
        height=img.height,
    )


def store_variant(blob_store, derivative: Derivative) -> str:
    blob_store.put(
        derivative.blob_name,
        derivative.data,
        metadata=derivative.metadata,
        content_type=JPEG_CONTENT_TYPE,
    )
    return derivative.blob_name


def replace_original(blob_store, source_bytes: bytes, tier: SizeTier, source_name: str) -> Derivative:
    """
    Writes the tier that stands in for the original.

    The original itself is left alone here. Once the job has settled the
    catalog, delete_original removes it, so a failure anywhere before that
    leaves the original in place for redelivery.
    """
    derivative = generate_variant(source_bytes, tier, source_name)
    store_variant(blob_store, derivative)
    logger.info(f"Stored replacement {derivative.blob_name} for original {source_name}")
    return derivative


def delete_original(blob_store, source_name: str) -> None:
    # best effort: a redelivered job finds it already gone
    blob_store.delete_if_exists(source_name)
    logger.info(f"Deleted original {source_name}")


class DerivativePipeline:
    """Runs every configured size tier for one catalog kind."""

    def __init__(self, config: PipelineConfig, blob_store):
        self.config = config
        self.blob_store = blob_store

    def run(self, job: Job, read_from: Optional[str] = None) -> Dict[str, str]:
        """
        Returns {tier name: new blob name}.

        read_from names the blob to read pixels from when it is not the job's
        source (a redelivered job whose original is already gone). Metadata
        still refers to the job's source. The original is not deleted here,
        see delete_original.
        """
        source_name = job.source_blob_name
        source_bytes = self.blob_store.get(read_from or source_name)

        names = {}
        for tier in self.config.tiers:
            if tier.replaces_original:
                derivative = replace_original(self.blob_store, source_bytes, tier, source_name)
            else:
                derivative = generate_variant(source_bytes, tier, source_name)
                store_variant(self.blob_store, derivative)
            logger.debug(
                f"Stored {tier.name} derivative {derivative.blob_name} "
                f"({derivative.width}x{derivative.height})"
            )
            names[tier.name] = derivative.blob_name
        return names
