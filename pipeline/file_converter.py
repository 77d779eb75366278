import io

from PIL import Image
import pillow_heif
from pdf2image import convert_from_bytes

from .utils import get_file_extension, read_media_bytes

pillow_heif.register_heif_opener()

CONVERTIBLE_IMAGE_EXTS = {".heic", ".heif", ".webp", ".bmp", ".tif", ".tiff"}
PDF_EXT = ".pdf"


def convert_to_jpeg(data: bytes, filename: str) -> bytes:
    """
    Converts document bytes (HEIC / PDF / other raster) into JPEG bytes
    that OpenCV and the vision model can read.
    JPEG and PNG pass through untouched so that re-encoding heuristics
    see the original file.
    """
    ext = get_file_extension(filename)

    # -------- Case 1: PDF, first page only --------
    if ext == PDF_EXT:
        pages = convert_from_bytes(data, dpi=300, first_page=1, last_page=1)
        if not pages:
            raise ValueError(f"No pages rendered from {filename}")
        return _to_jpeg(pages[0])

    # -------- Case 2: HEIC and friends --------
    if ext in CONVERTIBLE_IMAGE_EXTS:
        return _to_jpeg(Image.open(io.BytesIO(data)))

    return data


def load_document_image(ref: str) -> bytes:
    """Fetch a document image reference and normalize it to a decodable format."""
    return convert_to_jpeg(read_media_bytes(ref), ref)


def _to_jpeg(img: Image.Image) -> bytes:
    buffer = io.BytesIO()
    img.convert("RGB").save(buffer, "JPEG", quality=95)
    return buffer.getvalue()
