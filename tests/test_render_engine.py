import io

import pytest
from PIL import Image

from conftest import make_jpeg
from errors import AppError
from models import PRESETS, Platform, TemplateId
from render_engine import (
    chars_for_width,
    ellipsize,
    fit_text,
    render_card,
    wrap_by_width,
)


def test_chars_for_width_uses_056_factor_and_floor_of_ten():
    # 1080 / (66 * 0.56) = 29.2
    assert chars_for_width(1080, 66) == 29
    # 1080 / (36 * 0.56) = 53.5
    assert chars_for_width(1080, 36) == 53
    assert chars_for_width(50, 72) == 10


def test_wrap_by_width_greedy():
    assert wrap_by_width("aaaa bbbb cccc", 9) == ["aaaa bbbb", "cccc"]
    assert wrap_by_width("", 10) == []


def test_wrap_by_width_splits_long_words_into_chunks():
    assert wrap_by_width("x" * 25, 10) == ["x" * 10, "x" * 10, "x" * 5]
    assert wrap_by_width("hi " + "y" * 12, 10) == ["hi", "y" * 10, "yy"]


def test_fit_text_keeps_largest_size_when_it_fits():
    fit = fit_text("  Hello \n  world  ", 1080, 2, 66, 36)
    assert fit.font_size == 66
    assert fit.lines == ["Hello world"]


def test_fit_text_steps_down_by_two():
    # 13 four-letter words need 34 chars per line to fit in two lines,
    # first reached at 56px (1080 / 31.36 = 34.4)
    text = " ".join(["aaaa"] * 13)
    fit = fit_text(text, 1080, 2, 66, 36)
    assert fit.font_size == 56
    assert fit.lines == [" ".join(["aaaa"] * 7), " ".join(["aaaa"] * 6)]


def test_fit_text_overflow_truncates_and_ellipsizes():
    text = " ".join(["abcdefghi"] * 14)
    fit = fit_text(text, 1080, 2, 66, 36)
    assert fit.font_size == 36
    assert len(fit.lines) == 2
    assert fit.lines[0] == " ".join(["abcdefghi"] * 5)
    # trailing characters are replaced, the line keeps its wrapped length
    assert fit.lines[1] == " ".join(["abcdefghi"] * 5)[:46] + "..."
    assert len(fit.lines[1]) == 49
    assert all(len(line) <= 53 for line in fit.lines)


def test_fit_text_overflow_replaces_trailing_chars_when_line_is_full():
    fit = fit_text("x" * 200, 1080, 1, 38, 24)
    # 1080 / (24 * 0.56) = 80.3
    assert fit.font_size == 24
    assert fit.lines == ["x" * 77 + "..."]


def test_ellipsize_short_budget():
    assert ellipsize("abcdef", 3) == "..."
    assert ellipsize("abcdef", 2) == ".."
    assert ellipsize("abcdefghijkl", 10) == "abcdefg..."
    assert ellipsize("short line", 53) == "short l..."
    assert ellipsize("ab", 10) == "..."


@pytest.mark.parametrize("platform", list(Platform))
@pytest.mark.parametrize("template", list(TemplateId))
def test_render_card_matches_platform_preset(platform, template):
    rendered = render_card(make_jpeg(640, 480), "A title", "A subtitle", platform, template)
    expected = PRESETS[platform]

    assert (rendered.width, rendered.height) == expected
    img = Image.open(io.BytesIO(rendered.data))
    assert img.format == "PNG"
    assert img.size == expected


def test_render_card_ignores_source_aspect_ratio():
    tall = render_card(make_jpeg(40, 900), "Tall", None, "twitter", "center-dark")
    wide = render_card(make_jpeg(3000, 50), "Wide", None, "twitter", "center-dark")
    assert Image.open(io.BytesIO(tall.data)).size == (1200, 675)
    assert Image.open(io.BytesIO(wide.data)).size == (1200, 675)


def test_render_card_darkens_bottom_for_gradient_template():
    white = make_jpeg(1200, 630, color=(255, 255, 255))
    rendered = render_card(white, "t", None, "og", "gradient-bottom")
    img = Image.open(io.BytesIO(rendered.data)).convert("RGB")
    top = img.getpixel((1190, 2))
    bottom = img.getpixel((1190, 627))
    assert sum(top) > sum(bottom)


def test_render_card_rejects_unknown_platform():
    with pytest.raises(AppError) as exc:
        render_card(make_jpeg(), "t", None, "instagram", "gradient-bottom")
    assert exc.value.code == "INVALID_PLATFORM"
    assert exc.value.status_code == 400


def test_render_card_rejects_unknown_template():
    with pytest.raises(AppError) as exc:
        render_card(make_jpeg(), "t", None, "og", "polaroid")
    assert exc.value.code == "INVALID_TEMPLATE"


def test_corrupt_image_is_a_render_failure_not_a_validation_error():
    with pytest.raises(AppError) as exc:
        render_card(b"definitely not an image", "t", None, "og", "gradient-bottom")
    assert exc.value.code == "RENDER_FAILED"
    assert exc.value.status_code == 500
