"""
Format Catalog
Static registry of supported formats and the directed "convertible-to" graph.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

from fileforge.exceptions.handlers import NotFoundError

DEFAULT_MIME_TYPE = "application/octet-stream"


class FormatCategory(str, enum.Enum):
    AUDIO = "audio"
    VIDEO = "video"
    IMAGE = "image"
    DOCUMENT = "document"
    ARCHIVE = "archive"
    SUBTITLE = "subtitle"
    FONT = "font"


@dataclass(frozen=True)
class FormatInfo:
    extension: str
    mime_type: str
    category: FormatCategory
    name: str
    convertible_to: FrozenSet[str]

    def to_dict(self) -> dict:
        return {
            "extension": self.extension,
            "mimeType": self.mime_type,
            "category": self.category.value,
            "name": self.name,
            "convertibleTo": sorted(self.convertible_to),
        }


def _fmt(extension: str, mime_type: str, category: FormatCategory, name: str, targets: str) -> FormatInfo:
    return FormatInfo(extension, mime_type, category, name, frozenset(targets.split()))


_A, _V, _I, _D, _R, _S, _F = (
    FormatCategory.AUDIO,
    FormatCategory.VIDEO,
    FormatCategory.IMAGE,
    FormatCategory.DOCUMENT,
    FormatCategory.ARCHIVE,
    FormatCategory.SUBTITLE,
    FormatCategory.FONT,
)

FORMATS: Dict[str, FormatInfo] = {
    f.extension: f
    for f in (
        # Audio
        _fmt("mp3", "audio/mpeg", _A, "MP3", "wav flac aac ogg m4a wma"),
        _fmt("wav", "audio/wav", _A, "WAV", "mp3 flac aac ogg m4a"),
        _fmt("flac", "audio/flac", _A, "FLAC", "mp3 wav aac ogg m4a"),
        _fmt("aac", "audio/aac", _A, "AAC", "mp3 wav flac ogg m4a"),
        _fmt("ogg", "audio/ogg", _A, "OGG", "mp3 wav flac aac m4a"),
        _fmt("m4a", "audio/mp4", _A, "M4A", "mp3 wav flac aac ogg"),
        _fmt("wma", "audio/x-ms-wma", _A, "WMA", "mp3 wav flac"),
        # Video
        _fmt("mp4", "video/mp4", _V, "MP4", "avi mkv mov webm gif mp3"),
        _fmt("avi", "video/x-msvideo", _V, "AVI", "mp4 mkv mov webm gif"),
        _fmt("mkv", "video/x-matroska", _V, "MKV", "mp4 avi mov webm gif"),
        _fmt("mov", "video/quicktime", _V, "MOV", "mp4 avi mkv webm gif"),
        _fmt("webm", "video/webm", _V, "WebM", "mp4 avi mkv mov gif"),
        _fmt("flv", "video/x-flv", _V, "FLV", "mp4 avi mkv webm"),
        _fmt("wmv", "video/x-ms-wmv", _V, "WMV", "mp4 avi mkv webm"),
        # Images
        _fmt("jpg", "image/jpeg", _I, "JPEG", "png webp gif bmp tiff ico pdf"),
        _fmt("jpeg", "image/jpeg", _I, "JPEG", "png webp gif bmp tiff ico pdf"),
        _fmt("png", "image/png", _I, "PNG", "jpg webp gif bmp tiff ico pdf"),
        _fmt("webp", "image/webp", _I, "WebP", "jpg png gif bmp tiff"),
        _fmt("gif", "image/gif", _I, "GIF", "jpg png webp mp4"),
        _fmt("bmp", "image/bmp", _I, "BMP", "jpg png webp gif tiff"),
        _fmt("tiff", "image/tiff", _I, "TIFF", "jpg png webp bmp pdf"),
        _fmt("svg", "image/svg+xml", _I, "SVG", "png jpg pdf"),
        _fmt("ico", "image/x-icon", _I, "ICO", "png jpg"),
        _fmt("heic", "image/heic", _I, "HEIC", "jpg png webp"),
        # Documents
        _fmt("pdf", "application/pdf", _D, "PDF", "docx txt jpg png"),
        _fmt(
            "docx",
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            _D,
            "DOCX",
            "pdf txt odt html md",
        ),
        _fmt("doc", "application/msword", _D, "DOC", "pdf docx txt odt"),
        _fmt("txt", "text/plain", _D, "TXT", "pdf docx html md"),
        _fmt("rtf", "application/rtf", _D, "RTF", "pdf docx txt"),
        _fmt("odt", "application/vnd.oasis.opendocument.text", _D, "ODT", "pdf docx txt"),
        _fmt("html", "text/html", _D, "HTML", "pdf txt md"),
        _fmt("md", "text/markdown", _D, "Markdown", "pdf html docx txt"),
        _fmt("epub", "application/epub+zip", _D, "EPUB", "pdf txt html"),
        # Archives
        _fmt("zip", "application/zip", _R, "ZIP", "tar 7z"),
        _fmt("rar", "application/vnd.rar", _R, "RAR", "zip tar 7z"),
        _fmt("7z", "application/x-7z-compressed", _R, "7Z", "zip tar"),
        _fmt("tar", "application/x-tar", _R, "TAR", "zip 7z gz"),
        _fmt("gz", "application/gzip", _R, "GZ", "zip tar"),
        # Subtitles
        _fmt("srt", "application/x-subrip", _S, "SRT", "vtt ass"),
        _fmt("vtt", "text/vtt", _S, "VTT", "srt ass"),
        _fmt("ass", "text/x-ass", _S, "ASS", "srt vtt"),
        _fmt("ssa", "text/x-ssa", _S, "SSA", "srt vtt ass"),
        # Fonts
        _fmt("ttf", "font/ttf", _F, "TTF", "woff woff2 otf eot"),
        _fmt("otf", "font/otf", _F, "OTF", "ttf woff woff2"),
        _fmt("woff", "font/woff", _F, "WOFF", "ttf woff2"),
        _fmt("woff2", "font/woff2", _F, "WOFF2", "ttf woff"),
    )
}


def normalize_format_id(format_id: str) -> str:
    return (format_id or "").strip().lower().lstrip(".")


class FormatCatalog:
    """Pure queries over a static format table.

    Edges are asymmetric and must be listed explicitly: ``can_convert`` never
    derives a reverse edge or a self edge.
    """

    def __init__(self, formats: Optional[Mapping[str, FormatInfo]] = None):
        self._formats: Dict[str, FormatInfo] = dict(formats if formats is not None else FORMATS)

    def find_format(self, format_id: str) -> Optional[FormatInfo]:
        return self._formats.get(normalize_format_id(format_id))

    def get_format(self, format_id: str) -> FormatInfo:
        fmt = self.find_format(format_id)
        if fmt is None:
            raise NotFoundError(f"Unknown format: {format_id}", resource="format")
        return fmt

    def is_registered(self, format_id: str) -> bool:
        return normalize_format_id(format_id) in self._formats

    def can_convert(self, source: str, target: str) -> bool:
        fmt = self.find_format(source)
        if fmt is None:
            return False
        return normalize_format_id(target) in fmt.convertible_to

    def category_of(self, format_id: str) -> Optional[FormatCategory]:
        fmt = self.find_format(format_id)
        return fmt.category if fmt else None

    def mime_type_for(self, format_id: str) -> str:
        fmt = self.find_format(format_id)
        return fmt.mime_type if fmt else DEFAULT_MIME_TYPE

    def list_by_category(self, category: FormatCategory | str) -> List[FormatInfo]:
        try:
            wanted = FormatCategory(category)
        except ValueError:
            return []
        return [f for f in self._formats.values() if f.category == wanted]

    def list_categories(self) -> List[FormatCategory]:
        return list(FormatCategory)

    def list_formats(self) -> Iterable[FormatInfo]:
        return list(self._formats.values())


default_catalog = FormatCatalog()
