"""Turn a "last segment" URL template into the URL of any segment index.

The segment index is assumed to be the numerically largest digit run in the
final path component (``segment-41-v1-a1.ts`` -> ``41``). On equal values the
first run wins. Query strings and fragments never take part, so a signed CDN
URL such as ``segment-7.ts?exp=1700000000`` still resolves on ``7``. A
filename carrying an unrelated larger number, such as a ``1080`` resolution
tag, will be misread; existing content depends on this rule so it is kept as
is.
"""

import math
import re
from typing import Optional

from models.video import Quality

_DIGIT_RUN = re.compile(r"\d+")
_EXTENSION = re.compile(r"(\.[^.]+)$")


def _split_url(url: str) -> tuple[str, str, str]:
    """Split a URL into (path up to the last '/', filename, query and fragment)."""
    cut = min((i for i in (url.find("?"), url.find("#")) if i >= 0), default=len(url))
    head, sep, filename = url[:cut].rpartition("/")
    return head + sep, filename, url[cut:]


def _index_token(filename: str) -> Optional[re.Match]:
    best = None
    for match in _DIGIT_RUN.finditer(filename):
        if best is None or int(match.group()) > int(best.group()):
            best = match
    return best


def segment_filename(last_segment_url: str, index: int) -> str:
    """Return the filename of segment ``index`` derived from the template URL."""
    _, filename, _ = _split_url(last_segment_url)
    token = _index_token(filename)

    if token is not None:
        padded = str(index).zfill(len(token.group()))
        return filename[: token.start()] + padded + filename[token.end():]

    ext = _EXTENSION.search(filename)
    if ext:
        return f"{filename[: ext.start()]}_{index}{ext.group(1)}"
    return f"{filename}_{index}"


def resolve_segment_url(last_segment_url: str, index: int) -> str:
    """Build the full URL of segment ``index``.

    Args:
        last_segment_url: Template URL whose filename embeds the highest index
        index: Target segment index

    Returns:
        URL with only the index token of the filename replaced; the query
        string and fragment are kept as they are
    """
    prefix, _, suffix = _split_url(last_segment_url)
    return prefix + segment_filename(last_segment_url, index) + suffix


def estimate_segment_count_from_url(url: Optional[str]) -> int:
    """Largest digit run in the URL's filename, or 1 when there is none."""
    if not url:
        return 1
    _, filename, _ = _split_url(url)
    token = _index_token(filename)
    if token is None:
        return 1
    return int(token.group())


def resolve_segment_count(
    quality: Quality,
    duration: Optional[float],
    default_segment_length: float = 6.0,
) -> int:
    """Resolve how many segments a quality has.

    Order: an explicit count > 1, then the URL estimate if > 1, then
    ``ceil(duration / default_segment_length)``, then 1.
    """
    if quality.segment_count and quality.segment_count > 1:
        return int(quality.segment_count)

    estimated = estimate_segment_count_from_url(quality.last_segment_url)
    if estimated > 1:
        return estimated

    if duration and duration > 0 and default_segment_length > 0:
        return max(1, math.ceil(duration / default_segment_length))

    return 1
