import io
import logging
import os
from functools import lru_cache
from typing import List, Optional, Tuple

import arabic_reshaper
from bidi.algorithm import get_display
from PIL import Image, ImageDraw, ImageFont

from .errors import GlyphRenderError

logger = logging.getLogger(__name__)

PAGE_COUNT = 604

CANVAS_WIDTH = 800
GLYPH_FONT_SIZE = 48
CAPTION_FONT_SIZE = 32
LINE_HEIGHT = 1.5
# top, right, bottom, left
PADDING = (50, 50, 50, 0)
BLOCK_GAP = 60

TEXT_COLOR_HEX = "#FFFFFF"
CAPTION_COLOR_HEX = "#FFD43B"
TEXT_STROKE_COLOR_HEX = "#000000"

reshaper = arabic_reshaper.ArabicReshaper({"language": "Arabic", "delete_harakat": False})


def hex_to_rgb(hex_str: str) -> Tuple[int, int, int]:
    hex_str = hex_str.lstrip("#")
    if len(hex_str) != 6:
        raise ValueError(f"invalid colour: {hex_str}")
    return int(hex_str[0:2], 16), int(hex_str[2:4], 16), int(hex_str[4:6], 16)


def shape_text(text: str) -> str:
    """Join Arabic letters and reorder for right-to-left display."""
    return get_display(reshaper.reshape(text))


def default_height(glyph: str) -> int:
    return int(len(glyph) / 10 * 50 + 150)


@lru_cache(maxsize=128)
def _load_font(path: str, size: int) -> ImageFont.FreeTypeFont:
    return ImageFont.truetype(path, size)


def _text_width(draw: ImageDraw.ImageDraw, text: str, font) -> int:
    bbox = draw.textbbox((0, 0), text, font=font)
    return bbox[2] - bbox[0]


def _wrap_words(draw: ImageDraw.ImageDraw, text: str, font, max_width: int) -> List[str]:
    words = text.split()
    lines = []
    current = ""

    for word in words:
        test_line = (current + " " + word).strip()
        if not current or _text_width(draw, test_line, font) <= max_width:
            current = test_line
        else:
            lines.append(current)
            current = word

    if current:
        lines.append(current)
    return lines


def _to_png(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG", optimize=True)
    return buf.getvalue()


class VerseCanvas:
    """
    Renders code_v2 glyph strings with the per-page QCF v2 fonts.

    Every mushaf page has its own font (`p{page}.ttf`) mapping private-use
    code points to whole words, so the glyph text is drawn as-is, one word per
    code point, right to left.
    """

    def __init__(self, fonts_dir: str, caption_font_path: Optional[str] = None):
        self.fonts_dir = fonts_dir
        self.caption_font_path = caption_font_path or ""

    def page_font_path(self, page: int) -> str:
        return os.path.join(self.fonts_dir, "v2", "ttf", f"p{page}.ttf")

    def page_font(self, page: int, size: int = GLYPH_FONT_SIZE) -> ImageFont.FreeTypeFont:
        if not isinstance(page, int) or not 1 <= page <= PAGE_COUNT:
            raise GlyphRenderError(f"invalid page number {page!r}, must be between 1 and {PAGE_COUNT}")
        path = self.page_font_path(page)
        if not os.path.exists(path):
            raise GlyphRenderError(f"font file not found: {path}")
        try:
            return _load_font(path, size)
        except OSError as e:
            raise GlyphRenderError(f"could not load {path}: {e}") from e

    def caption_font(self, size: int = CAPTION_FONT_SIZE):
        if self.caption_font_path and os.path.exists(self.caption_font_path):
            try:
                return _load_font(self.caption_font_path, size)
            except OSError:
                logger.warning("caption font %s is unreadable, using the default", self.caption_font_path)
        return ImageFont.load_default()

    # ------------------ drawing ------------------

    def _layout(self, glyph: str, page: int, max_width: int):
        if not glyph or not glyph.strip():
            raise GlyphRenderError("glyph text is required")
        font = self.page_font(page)
        scratch = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
        return font, _wrap_words(scratch, glyph, font, max_width)

    @staticmethod
    def _draw_block(draw: ImageDraw.ImageDraw, lines: List[str], font, top: int, width: int) -> int:
        right = PADDING[1]
        step = int(GLYPH_FONT_SIZE * LINE_HEIGHT)
        y = top
        for line in lines:
            # first word sits on the right
            ordered = " ".join(reversed(line.split()))
            x = max(PADDING[3], width - right - _text_width(draw, ordered, font))
            draw.text((x, y), ordered, font=font, fill=hex_to_rgb(TEXT_COLOR_HEX),
                      stroke_width=1, stroke_fill=hex_to_rgb(TEXT_STROKE_COLOR_HEX))
            y += step
        return y

    def render_verse(self, glyph: str, page: int, *, height: Optional[int] = None) -> bytes:
        """PNG of one glyph string. Height defaults to one that grows with the text length."""
        width = max(PADDING[1] + GLYPH_FONT_SIZE, min(CANVAS_WIDTH, len(glyph or "") * 30))
        font, lines = self._layout(glyph, page, width - PADDING[1] - PADDING[3])

        needed = PADDING[0] + len(lines) * int(GLYPH_FONT_SIZE * LINE_HEIGHT) + PADDING[2]
        image = Image.new("RGBA", (width, max(height or default_height(glyph), needed)), (0, 0, 0, 0))
        self._draw_block(ImageDraw.Draw(image), lines, font, PADDING[0], width)
        return _to_png(image)

    def render_verse_pair(self, first: Tuple[str, int], second: Tuple[str, int],
                          caption: Optional[str] = None) -> bytes:
        """Two (glyph, page) verses stacked top and bottom, optionally under a caption line."""
        max_width = CANVAS_WIDTH - PADDING[1] - PADDING[3]
        first_font, first_lines = self._layout(first[0], first[1], max_width)
        second_font, second_lines = self._layout(second[0], second[1], max_width)

        step = int(GLYPH_FONT_SIZE * LINE_HEIGHT)
        caption_font = self.caption_font() if caption else None
        caption_height = CAPTION_FONT_SIZE + BLOCK_GAP // 2 if caption else 0
        height = (PADDING[0] + caption_height + len(first_lines) * step + BLOCK_GAP
                  + len(second_lines) * step + PADDING[2])

        image = Image.new("RGBA", (CANVAS_WIDTH, height), (0, 0, 0, 0))
        draw = ImageDraw.Draw(image)

        y = PADDING[0]
        if caption:
            shaped = shape_text(caption)
            x = (CANVAS_WIDTH - _text_width(draw, shaped, caption_font)) // 2
            draw.text((x, y), shaped, font=caption_font, fill=hex_to_rgb(CAPTION_COLOR_HEX),
                      stroke_width=2, stroke_fill=hex_to_rgb(TEXT_STROKE_COLOR_HEX))
            y += caption_height

        y = self._draw_block(draw, first_lines, first_font, y, CANVAS_WIDTH)
        separator_y = y + BLOCK_GAP // 2 - step // 4
        draw.line((PADDING[3] + 40, separator_y, CANVAS_WIDTH - PADDING[1], separator_y),
                  fill=hex_to_rgb(CAPTION_COLOR_HEX), width=2)
        self._draw_block(draw, second_lines, second_font, y + BLOCK_GAP, CANVAS_WIDTH)
        return _to_png(image)
