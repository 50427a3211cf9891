"""Mapping of extension-less paths to .html resources."""

import re
from typing import List

EXTENSION_RE = re.compile(r'\.[a-z0-9]+$', re.IGNORECASE)


def has_extension(path: str) -> bool:
    return EXTENSION_RE.search(path) is not None


def rewrite_clean_path(path: str) -> str:
    """``/about`` -> ``/about.html``, ``/docs/`` -> ``/docs/index.html``."""
    if has_extension(path):
        return path
    if path.endswith('/'):
        return path + 'index.html'
    return path + '.html'


def alternate_paths(path: str) -> List[str]:
    """Paths to try, in order, after ``path`` returned 404."""
    candidates = []
    if path.endswith('.html'):
        candidates.append(path[:-len('.html')])
    elif not has_extension(path):
        candidates.append(path + '.html')
    if not path.endswith('/'):
        candidates.append(path + '/index.html')

    alternates = []
    for candidate in candidates:
        if candidate and candidate != path and candidate not in alternates:
            alternates.append(candidate)
    return alternates
