import base64
import binascii
import io
import logging
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader, PdfWriter, Transformation
from pypdf.errors import PdfReadError
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from ..errors import StorageError, ValidationFailed
from .coordinates import placeholder_rect

logger = logging.getLogger(__name__)

ACCEPTED_IMAGE_FORMATS = {"PNG", "JPEG"}


@dataclass
class BurnItem:
    placeholder: object  # anything with page_number and the four *_percent fields
    image_bytes: bytes


def decode_image(image_base64: str) -> bytes:
    """
    Decode a captured image sent as base64, with or without a
    ``data:image/...;base64,`` prefix, and check it is a PNG or JPEG.
    """
    if not isinstance(image_base64, str) or not image_base64:
        raise ValidationFailed("invalid_image", "Signature image is empty.")
    if image_base64.startswith("data:"):
        _, _, image_base64 = image_base64.partition(",")
    try:
        img_bytes = base64.b64decode(image_base64, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationFailed("invalid_image", "Signature image is not valid base64.")

    try:
        with Image.open(io.BytesIO(img_bytes)) as img:
            img.verify()
            fmt = img.format
    except (UnidentifiedImageError, OSError, SyntaxError):
        raise ValidationFailed("invalid_image", "Signature image could not be read.")
    if fmt not in ACCEPTED_IMAGE_FORMATS:
        raise ValidationFailed("invalid_image", f"Unsupported image format: {fmt}.")
    return img_bytes


def count_pages(pdf_bytes: bytes) -> int:
    try:
        return len(PdfReader(io.BytesIO(pdf_bytes)).pages)
    except (PdfReadError, ValueError, OSError) as e:
        raise ValidationFailed("invalid_pdf", f"File is not a readable PDF: {e}")


def burn_signatures(input_pdf_bytes: bytes, items: list) -> bytes:
    """
    Composite signature images onto their placeholder rectangles.

    Args:
        input_pdf_bytes: the latest stored PDF bytes
        items: list of BurnItem for one signer's batch

    Returns:
        bytes: the whole document re-serialized with the images drawn in
    """
    try:
        reader = PdfReader(io.BytesIO(input_pdf_bytes))
    except (PdfReadError, ValueError, OSError) as e:
        raise StorageError("pdf_error", f"Stored document is not a readable PDF: {e}")
    writer = PdfWriter()

    # Group signatures by page
    items_by_page = {}
    for item in items:
        p = item.placeholder.page_number
        if p < 1 or p > len(reader.pages):
            raise ValidationFailed("invalid_page", f"Page {p} does not exist in this document.")
        items_by_page.setdefault(p, []).append(item)

    for i, source in enumerate(reader.pages):
        page_num = i + 1
        # merge onto the writer-owned copy of the page
        page = writer.add_page(source)

        if page_num in items_by_page:
            packet = io.BytesIO()
            box = page.mediabox
            width = float(box.width)
            height = float(box.height)

            c = canvas.Canvas(packet, pagesize=(width, height))
            for item in items_by_page[page_num]:
                rect = placeholder_rect(item.placeholder, width, height)
                c.drawImage(
                    ImageReader(io.BytesIO(item.image_bytes)),
                    rect.x,
                    rect.y,
                    width=rect.width,
                    height=rect.height,
                    mask="auto",
                )
            c.save()
            packet.seek(0)

            overlay = PdfReader(packet).pages[0]
            # the overlay is drawn from (0, 0); shift it onto pages whose box does not start there
            left, bottom = float(box.left), float(box.bottom)
            if left or bottom:
                page.merge_transformed_page(overlay, Transformation().translate(left, bottom))
            else:
                page.merge_page(overlay)
            logger.debug("burned %d image(s) on page %d", len(items_by_page[page_num]), page_num)

    # Write to bytes
    output_buffer = io.BytesIO()
    writer.write(output_buffer)
    return output_buffer.getvalue()
