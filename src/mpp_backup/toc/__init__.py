"""Table of contents: entry models, dependency resolution and the manifest.

Usage:
    from mpp_backup.toc import TableOfContents, resolve_order
"""

from mpp_backup.toc.models import ByteRange, TOCEntry
from mpp_backup.toc.resolver import check_order, filter_entries, resolve_order
from mpp_backup.toc.toc import MANIFEST_FORMAT_VERSION, TableOfContents

__all__ = [
    "ByteRange",
    "TOCEntry",
    "check_order",
    "filter_entries",
    "resolve_order",
    "MANIFEST_FORMAT_VERSION",
    "TableOfContents",
]
