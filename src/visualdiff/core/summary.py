"""Markdown summary posted as a commit comment when a build fails."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from urllib.parse import quote


def diff_url(public_url: str, project: str, build: str, browser: str, image: str) -> str:
    """Address of a stored diff artifact under the project/build/browser/image scheme."""
    parts = [quote(part, safe="") for part in (project, build, browser)]
    return f"{public_url.rstrip('/')}/api/diff/{'/'.join(parts)}/{quote(image)}"


def render_markdown_summary(
    *,
    public_url: str,
    project: str,
    build: str,
    diffs: Mapping[str, Sequence[str]],
) -> str:
    browsers = sorted(diffs)
    lines = [f"Diffs found in {len(browsers)} browser(s): {', '.join(browsers)}"]
    groups = []
    for browser in browsers:
        images = list(diffs[browser])
        plural = "image" if len(images) == 1 else "images"
        group = [f"<h3>{browser} ({len(images)} {plural})</h3>"]
        for image in images:
            url = diff_url(public_url, project, build, browser, image)
            group.append(f"![{url}]({url})")
        groups.append("\n".join(group))
    lines.append("\n\n".join(groups))
    return "\n".join(lines)


__all__ = ["diff_url", "render_markdown_summary"]
