# render_engine.py
"""Card rendering with Pillow.

The source image is cover-fitted (center crop) to the platform canvas, a
template overlay is composited on top, and the title/subtitle are drawn.
Text fitting does not measure glyphs: a character is assumed to be
``0.56 * font_size`` pixels wide, and font sizes are tried from largest to
smallest in steps of 2 until the wrapped text fits the line cap.
"""

import logging
import math
from functools import lru_cache
from io import BytesIO
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple, Union

from PIL import Image, ImageDraw, ImageFont, ImageOps

from errors import AppError
from models import PRESETS, CanvasSize, Platform, TemplateId

logger = logging.getLogger(__name__)

CHAR_WIDTH_FACTOR = 0.56
FONT_SIZE_STEP = 2
MIN_CHARS_PER_LINE = 10
PNG_COMPRESS_LEVEL = 6

BOLD_FONT_CANDIDATES = [
    "DejaVuSans-Bold.ttf",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf",
]
REGULAR_FONT_CANDIDATES = [
    "DejaVuSans.ttf",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
]


class FitText(NamedTuple):
    lines: List[str]
    font_size: int


class TextRun(NamedTuple):
    x: int
    y: int
    text: str
    font_size: int
    fill: str
    anchor: str  # Pillow anchor: "ls" left-baseline, "ms" middle-baseline
    bold: bool = True


class RenderedImage(NamedTuple):
    data: bytes
    width: int
    height: int


# ---------- Text fitting ----------

def chars_for_width(max_width_px: int, font_size: int) -> int:
    return max(MIN_CHARS_PER_LINE, math.floor(max_width_px / (font_size * CHAR_WIDTH_FACTOR)))


def wrap_by_width(text: str, max_chars: int) -> List[str]:
    """Greedy word wrap. Words longer than a line are split into line-sized chunks."""
    lines: List[str] = []
    current = ""
    for word in text.split():
        candidate = word if not current else f"{current} {word}"
        if len(candidate) <= max_chars:
            current = candidate
            continue

        if current:
            lines.append(current)
        while len(word) > max_chars:
            lines.append(word[:max_chars])
            word = word[max_chars:]
        current = word

    if current:
        lines.append(current)
    return lines


def ellipsize(line: str, max_chars: int) -> str:
    """Mark truncation by replacing the trailing characters with ``...``; never lengthens the line."""
    if max_chars <= 3:
        return "." * max_chars
    keep = max(0, min(len(line), max_chars) - 3)
    return f"{line[:keep]}..."


def fit_text(text: str, max_width_px: int, max_lines: int, max_font_size: int, min_font_size: int) -> FitText:
    normalized = " ".join(text.split())

    for font_size in range(max_font_size, min_font_size - 1, -FONT_SIZE_STEP):
        lines = wrap_by_width(normalized, chars_for_width(max_width_px, font_size))
        if len(lines) <= max_lines:
            return FitText(lines, font_size)

    max_chars = chars_for_width(max_width_px, min_font_size)
    wrapped = wrap_by_width(normalized, max_chars)[:max_lines]
    wrapped[-1] = ellipsize(wrapped[-1], max_chars)
    return FitText(wrapped, min_font_size)


# ---------- Templates ----------

def _gradient_bottom_overlay(canvas: CanvasSize) -> Image.Image:
    # transparent at the top, 72% black at the bottom
    mask = Image.linear_gradient("L").resize(canvas).point(lambda v: round(v * 0.72))
    overlay = Image.new("RGBA", canvas, (0, 0, 0, 0))
    overlay.putalpha(mask)
    return overlay


def _gradient_bottom_layout(canvas: CanvasSize, title: str, subtitle: Optional[str]) -> List[TextRun]:
    width, height = canvas
    title_fit = fit_text(title, width - 120, 2, 66, 36)
    subtitle_fit = fit_text(subtitle, width - 120, 1, 38, 24) if subtitle else None

    advance = math.ceil(title_fit.font_size * 1.2)
    title_y = height - 170
    runs = [
        TextRun(60, title_y + index * advance, line, title_fit.font_size, "#FFFFFF", "ls")
        for index, line in enumerate(title_fit.lines)
    ]

    if subtitle_fit and subtitle_fit.lines:
        subtitle_y = title_y + len(title_fit.lines) * advance + 24
        runs.append(TextRun(60, subtitle_y, subtitle_fit.lines[0], subtitle_fit.font_size, "#D9DFE8", "ls", False))
    return runs


def _center_dark_overlay(canvas: CanvasSize) -> Image.Image:
    return Image.new("RGBA", canvas, (0, 0, 0, round(255 * 0.48)))


def _center_dark_layout(canvas: CanvasSize, title: str, subtitle: Optional[str]) -> List[TextRun]:
    width, height = canvas
    title_fit = fit_text(title, width - 180, 2, 72, 38)
    subtitle_fit = fit_text(subtitle, width - 200, 1, 34, 22) if subtitle else None

    block_height = len(title_fit.lines) * math.ceil(title_fit.font_size * 1.18)
    if subtitle_fit:
        block_height += subtitle_fit.font_size + 24
    title_y = math.floor((height - block_height) / 2) + title_fit.font_size
    advance = math.ceil(title_fit.font_size * 1.2)
    center_x = width // 2

    runs = [
        TextRun(center_x, title_y + index * advance, line, title_fit.font_size, "#FFFFFF", "ms")
        for index, line in enumerate(title_fit.lines)
    ]

    if subtitle_fit and subtitle_fit.lines:
        subtitle_y = title_y + len(title_fit.lines) * advance + 18
        runs.append(
            TextRun(center_x, subtitle_y, subtitle_fit.lines[0], subtitle_fit.font_size, "#DCE1EA", "ms", False)
        )
    return runs


OverlayBuilder = Callable[[CanvasSize], Image.Image]
LayoutBuilder = Callable[[CanvasSize, str, Optional[str]], List[TextRun]]

TEMPLATE_STRATEGIES: Dict[TemplateId, Tuple[OverlayBuilder, LayoutBuilder]] = {
    TemplateId.GRADIENT_BOTTOM: (_gradient_bottom_overlay, _gradient_bottom_layout),
    TemplateId.CENTER_DARK: (_center_dark_overlay, _center_dark_layout),
}


def coerce_platform(value: Union[str, Platform]) -> Platform:
    try:
        return Platform(value)
    except ValueError:
        raise AppError(
            "INVALID_PLATFORM",
            f"platform must be one of: {', '.join(p.value for p in Platform)}",
            400,
        )


def coerce_template(value: Union[str, TemplateId]) -> TemplateId:
    try:
        return TemplateId(value)
    except ValueError:
        raise AppError(
            "INVALID_TEMPLATE",
            f"template_id must be one of: {', '.join(t.value for t in TemplateId)}",
            400,
        )


@lru_cache(maxsize=64)
def _load_font(size: int, bold: bool, font_path: str = "") -> ImageFont.FreeTypeFont:
    candidates = ([font_path] if font_path else []) + (BOLD_FONT_CANDIDATES if bold else REGULAR_FONT_CANDIDATES)
    for path in candidates:
        try:
            return ImageFont.truetype(path, size=size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


# ---------- Rendering ----------

def _open_image(data: bytes) -> Image.Image:
    """Open raw image bytes with Pillow and convert to RGB."""
    with Image.open(BytesIO(data)) as img:
        img.load()
        return img.convert("RGB")


def render_card(
    source: bytes,
    title: str,
    subtitle: Optional[str],
    platform: Union[str, Platform],
    template_id: Union[str, TemplateId],
    font_path: str = "",
) -> RenderedImage:
    """Render a PNG card. Output size is the platform preset, whatever the source size."""
    platform = coerce_platform(platform)
    template = coerce_template(template_id)
    canvas = PRESETS[platform]
    build_overlay, build_layout = TEMPLATE_STRATEGIES[template]

    try:
        base = ImageOps.fit(_open_image(source), canvas, method=Image.LANCZOS, centering=(0.5, 0.5))
        card = Image.alpha_composite(base.convert("RGBA"), build_overlay(canvas))

        draw = ImageDraw.Draw(card)
        for run in build_layout(canvas, title, subtitle):
            font = _load_font(run.font_size, run.bold, font_path)
            draw.text((run.x, run.y), run.text, fill=run.fill, font=font, anchor=run.anchor)

        buffer = BytesIO()
        card.convert("RGB").save(buffer, format="PNG", compress_level=PNG_COMPRESS_LEVEL)
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        logger.exception("render failed for platform=%s template=%s", platform.value, template.value)
        raise AppError("RENDER_FAILED", "Failed to render image", 500) from exc

    return RenderedImage(buffer.getvalue(), canvas.width, canvas.height)
