"""
Share card image generation.
Renders coin detail and its price chart into a 1200x630 PNG for link previews.
"""

import base64
from io import BytesIO
from pathlib import Path
from typing import Optional, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFont

from coinframe.errors import RenderFailed
from coinframe.models import CoinDetail, MarketChart
from coinframe.utils.logging import get_logger

logger = get_logger(__name__)

PNG_DATA_URI_PREFIX = "data:image/png;base64,"


def format_usd(n: Optional[float]) -> str:
    """Format a USD amount, keeping precision for sub-dollar prices."""
    if n is None:
        return "-"
    decimals = 6 if abs(n) < 1 else 2
    sign = "-" if n < 0 else ""
    return f"{sign}${abs(n):,.{decimals}f}"


def decode_data_uri(data_uri: str) -> bytes:
    """Strip the PNG data URI prefix and decode the image bytes."""
    if data_uri.startswith(PNG_DATA_URI_PREFIX):
        data_uri = data_uri[len(PNG_DATA_URI_PREFIX):]
    return base64.b64decode(data_uri)


def sparkline_points(
    values: Sequence[float],
    box: Tuple[int, int, int, int],
) -> list[Tuple[float, float]]:
    """Scale a series into a pixel box (x1, y1, x2, y2).

    A flat series sits on the vertical centre of the box.
    """
    if not values:
        return []
    x1, y1, x2, y2 = box
    width = x2 - x1
    height = y2 - y1
    lo = min(values)
    hi = max(values)
    dx = width / (len(values) - 1 or 1)

    def scale_y(v: float) -> float:
        if hi == lo:
            return y1 + height / 2
        return y1 + height - ((v - lo) / (hi - lo)) * height

    return [(x1 + i * dx, scale_y(v)) for i, v in enumerate(values)]


class OgCardRenderer:
    """Generates coin share cards."""

    CARD_WIDTH = 1200
    CARD_HEIGHT = 630
    PADDING = 48

    THEME = {
        "background": (11, 13, 16),     # #0b0d10
        "panel": (15, 20, 26),          # #0f141a
        "text": (255, 255, 255),
        "muted": (156, 163, 175),       # #9ca3af
        "line": (34, 211, 238),         # #22d3ee
        "badge": (17, 17, 17),
    }

    def _get_font(self, size: int, bold: bool = False) -> ImageFont.FreeTypeFont:
        """Get a font at the specified size."""
        if bold:
            font_paths = [
                "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
                "/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf",
                "C:/Windows/Fonts/arialbd.ttf",
                "/System/Library/Fonts/Helvetica.ttc",
            ]
        else:
            font_paths = [
                "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
                "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
                "C:/Windows/Fonts/arial.ttf",
                "/System/Library/Fonts/Helvetica.ttc",
            ]

        for path in font_paths:
            try:
                if Path(path).exists():
                    return ImageFont.truetype(path, size)
            except (OSError, IOError):
                continue

        try:
            return ImageFont.load_default(size)
        except TypeError:
            return ImageFont.load_default()

    def _draw_header(self, draw: ImageDraw.ImageDraw, detail: CoinDetail) -> None:
        theme = self.THEME
        pad = self.PADDING

        # Monogram badge in place of the remote logo
        badge = (pad, pad, pad + 96, pad + 96)
        draw.rounded_rectangle(badge, radius=16, fill=theme["badge"])
        initial = (detail.symbol or detail.name or "?")[:1].upper()
        draw.text(
            (pad + 48, pad + 48),
            initial,
            font=self._get_font(48, bold=True),
            fill=theme["line"],
            anchor="mm",
        )

        name_x = pad + 96 + 24
        draw.text((name_x, pad + 4), detail.name, font=self._get_font(48, bold=True), fill=theme["text"])
        draw.text(
            (name_x, pad + 62),
            detail.symbol.upper(),
            font=self._get_font(28),
            fill=theme["muted"],
        )

        right_x = self.CARD_WIDTH - pad
        draw.text(
            (right_x, pad + 4),
            format_usd(detail.price_usd),
            font=self._get_font(40, bold=True),
            fill=theme["text"],
            anchor="ra",
        )
        draw.text(
            (right_x, pad + 58),
            f"Market Cap {format_usd(detail.market_cap_usd)}",
            font=self._get_font(24),
            fill=theme["muted"],
            anchor="ra",
        )

    def _draw_chart(self, draw: ImageDraw.ImageDraw, chart: MarketChart) -> None:
        theme = self.THEME
        pad = self.PADDING
        panel = (pad, 192, self.CARD_WIDTH - pad, 192 + 360)
        draw.rounded_rectangle(panel, radius=24, fill=theme["panel"])
        draw.text(
            (panel[0] + 24, panel[1] + 20),
            f"{chart.days}d price",
            font=self._get_font(24),
            fill=theme["muted"],
        )

        plot = (panel[0] + 24, panel[1] + 64, panel[2] - 24, panel[3] - 24)
        points = sparkline_points(chart.values, plot)
        if len(points) == 1:
            x, y = points[0]
            draw.ellipse((x - 4, y - 4, x + 4, y + 4), fill=theme["line"])
        elif points:
            draw.line(points, fill=theme["line"], width=6, joint="curve")

    def _draw_footer(self, draw: ImageDraw.ImageDraw) -> None:
        draw.text(
            (self.PADDING, self.CARD_HEIGHT - self.PADDING),
            "Powered by CoinGecko",
            font=self._get_font(24),
            fill=self.THEME["muted"],
            anchor="ld",
        )

    def render_png(self, detail: CoinDetail, chart: MarketChart) -> bytes:
        """Render the card and return raw PNG bytes."""
        try:
            img = Image.new("RGB", (self.CARD_WIDTH, self.CARD_HEIGHT), self.THEME["background"])
            draw = ImageDraw.Draw(img)
            self._draw_header(draw, detail)
            self._draw_chart(draw, chart)
            self._draw_footer(draw)

            buffer = BytesIO()
            img.save(buffer, format="PNG", optimize=True)
            return buffer.getvalue()
        except Exception as e:
            logger.error("Card render failed", coin_id=detail.id, error=str(e))
            raise RenderFailed(f"Could not render card for {detail.id}: {e}") from e

    def render(self, detail: CoinDetail, chart: MarketChart) -> str:
        """Render the card as a PNG data URI."""
        png = self.render_png(detail, chart)
        return PNG_DATA_URI_PREFIX + base64.b64encode(png).decode("ascii")
