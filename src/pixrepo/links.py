import html
import re

PUBLIC_PREFIX = "public/"

_MARKDOWN_UNSAFE = re.compile(r"""[()\[\]<>"'\\#|`\s]""")


def _percent_encode(match: re.Match) -> str:
    return "".join(f"%{b:02X}" for b in match.group(0).encode("utf-8"))


def markdown_safe_url(url: str) -> str:
    """Percent-encode the characters that would end a Markdown link target."""
    return _MARKDOWN_UNSAFE.sub(_percent_encode, url)


def public_url(site_url: str, remote_path: str) -> str:
    path = remote_path[len(PUBLIC_PREFIX):] if remote_path.startswith(PUBLIC_PREFIX) else remote_path
    return f"{site_url.rstrip('/')}/{path}"


def build_links(url: str, name: str) -> dict[str, str]:
    return {
        "url": url,
        "markdown": f"![{name}]({markdown_safe_url(url)})",
        "html": f'<img src="{html.escape(url)}" alt="{html.escape(name)}">',
        "bbcode": f"[img]{url}[/img]",
    }
