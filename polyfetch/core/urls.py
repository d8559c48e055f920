"""
URL helpers shared by the registry, module cache and runtime.

urllib.parse.urljoin only resolves relative references for a fixed list of
schemes (http, file, ...), so `urljoin("hyper://key/a.py", "./b.py")`
returns "./b.py" untouched. resolve_url implements RFC 3986 section 5.2
directly on top of urlsplit so every scheme behaves the same way.
"""

import re
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*:")


def has_scheme(url: str) -> bool:
    """Check whether a string starts with a URL scheme."""
    return bool(_SCHEME_RE.match(url))


def get_scheme(url: str) -> Optional[str]:
    """Return the lowercased scheme with its trailing colon, e.g. "https:"."""
    match = _SCHEME_RE.match(url)
    if not match:
        return None
    return match.group(0).lower()


def normalize_scheme(scheme: str) -> str:
    """Accept "http", "HTTP:" or "http:" and return "http:"."""
    scheme = scheme.strip().lower()
    if not scheme.endswith(":"):
        scheme += ":"
    return scheme


def remove_dot_segments(path: str) -> str:
    """RFC 3986 section 5.2.4."""
    output = []
    segments = path.split("/")
    for index, segment in enumerate(segments):
        last = index == len(segments) - 1
        if segment == ".":
            if last:
                output.append("")
            continue
        if segment == "..":
            if len(output) > 1 or (output and output[0] != ""):
                output.pop()
            if last:
                output.append("")
            continue
        output.append(segment)

    result = "/".join(output)
    if path.startswith("/") and not result.startswith("/"):
        result = "/" + result
    return result


def _merge(base_netloc: str, base_path: str, ref_path: str) -> str:
    if base_netloc and not base_path:
        return "/" + ref_path
    head, sep, _ = base_path.rpartition("/")
    if not sep:
        return ref_path
    return f"{head}/{ref_path}"


def resolve_url(reference: str, base: Optional[str] = None) -> str:
    """
    Resolve a (possibly relative) URL reference against a base URL.

    Args:
        reference: Absolute URL, scheme-relative, absolute path or relative path
        base: Absolute base URL; required when reference is relative

    Returns:
        Absolute URL string (fragment preserved)

    Raises:
        ValueError: If reference is relative and no absolute base is given
    """
    if has_scheme(reference):
        parts = urlsplit(reference)
        return urlunsplit(parts._replace(path=remove_dot_segments(parts.path)))

    if not base or not has_scheme(base):
        raise ValueError(f"Cannot resolve relative URL {reference!r} without an absolute base")

    b = urlsplit(base)
    r = urlsplit(reference)

    if reference.startswith("//"):
        netloc, path, query = r.netloc, remove_dot_segments(r.path), r.query
    elif not r.path:
        netloc, path = b.netloc, b.path
        query = r.query if r.query or "?" in reference else b.query
    elif r.path.startswith("/"):
        netloc, path, query = b.netloc, remove_dot_segments(r.path), r.query
    else:
        netloc = b.netloc
        path = remove_dot_segments(_merge(b.netloc, b.path, r.path))
        query = r.query

    return urlunsplit((b.scheme, netloc, path, query, r.fragment))


def strip_fragment(url: str) -> str:
    """Drop the #fragment of a URL."""
    return url.split("#", 1)[0]


def normalize_url(url: str, base: Optional[str] = None) -> str:
    """Absolute URL with the fragment removed; used as the module cache key."""
    return strip_fragment(resolve_url(url, base))


def path_to_file_url(path: Path, directory: bool = True) -> str:
    """Convert a local path to a file: URL, with a trailing slash for directories."""
    url = Path(path).resolve().as_uri()
    if directory and not url.endswith("/"):
        url += "/"
    return url
