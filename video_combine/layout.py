import math

from .models import LayoutResult

BASE_DIVISOR = 12
COMPRESSION_FACTOR = 2
LINE_SPACING_PX = 5
MIN_STROKE_PX = 2
BRANDING_DIVISOR = 24

# Average glyph advance relative to font size, used when the character budget
# has to be derived from the frame width.
AVG_GLYPH_WIDTH_RATIO = 0.6
MIN_DERIVED_CHARS = 8

CJK_BUDGET_RATIO = 0.6
CJK_LANGUAGES = {"ko", "ja", "zh"}

_CJK_RANGES = (
    (0x1100, 0x11FF),  # Hangul Jamo
    (0x3040, 0x309F),  # Hiragana
    (0x30A0, 0x30FF),  # Katakana
    (0x3130, 0x318F),  # Hangul Compatibility Jamo
    (0x3400, 0x4DBF),  # CJK Extension A
    (0x4E00, 0x9FFF),  # CJK Unified Ideographs
    (0xAC00, 0xD7AF),  # Hangul Syllables
    (0xF900, 0xFAFF),  # CJK Compatibility Ideographs
)

EMPTY_LAYOUT = LayoutResult(lines=(), font_size_px=0, line_height_px=0, stroke_width_px=0)


def is_cjk(ch: str) -> bool:
    cp = ord(ch)
    return any(lo <= cp <= hi for lo, hi in _CJK_RANGES)


def visual_width(text: str) -> int:
    return sum(2 if is_cjk(ch) else 1 for ch in text)


def font_size_for(frame_height: int, line_count: int, base_divisor: int = BASE_DIVISOR) -> int:
    line_count = max(line_count, 1)
    return int(math.floor(frame_height / (base_divisor + (line_count - 1) * COMPRESSION_FACTOR)))


def derive_max_chars(frame_width: int, frame_height: int, base_divisor: int = BASE_DIVISOR) -> int:
    single_line_font = font_size_for(frame_height, 1, base_divisor)
    if single_line_font <= 0:
        return MIN_DERIVED_CHARS
    return max(MIN_DERIVED_CHARS, int(frame_width / (single_line_font * AVG_GLYPH_WIDTH_RATIO)))


def wrap_words(text: str, max_chars_per_line: int, cjk_aware: bool = False) -> list[str]:
    """Greedy word wrap. Words are never split, an oversized word gets its own line."""
    if cjk_aware:
        budget = int(math.floor(max_chars_per_line * CJK_BUDGET_RATIO))
        measure = visual_width
    else:
        budget = max_chars_per_line
        measure = len

    lines: list[str] = []
    current: list[str] = []
    current_len = 0
    for word in text.split():
        word_len = measure(word)
        if current and current_len + word_len + 1 <= budget:
            current.append(word)
            current_len += word_len + 1
            continue
        if current:
            lines.append(" ".join(current))
        current = [word]
        current_len = word_len
    if current:
        lines.append(" ".join(current))
    return lines


def wrap_and_size(
    text: str,
    frame_width: int,
    frame_height: int,
    max_chars_per_line: int,
    *,
    cjk_aware: bool = False,
    base_divisor: int = BASE_DIVISOR,
) -> LayoutResult:
    if not text or not text.strip():
        return EMPTY_LAYOUT

    if max_chars_per_line <= 0:
        max_chars_per_line = derive_max_chars(frame_width, frame_height, base_divisor)

    lines = wrap_words(text, max_chars_per_line, cjk_aware=cjk_aware)
    font_size = font_size_for(frame_height, len(lines), base_divisor)
    return LayoutResult(
        lines=tuple(lines),
        font_size_px=font_size,
        line_height_px=font_size + LINE_SPACING_PX,
        stroke_width_px=max(MIN_STROKE_PX, font_size // 10),
    )


def wants_cjk_wrap(language: str | None, configured: bool) -> bool:
    if configured:
        return True
    return (language or "").split("-")[0].lower() in CJK_LANGUAGES
