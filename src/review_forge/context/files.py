"""
File type detection shared by the chunker and direct search.
"""

from pathlib import Path

BINARY_EXTENSIONS = frozenset(
    {
        ".exe", ".dll", ".so", ".dylib", ".bin", ".obj", ".o", ".a", ".lib",
        ".pdb", ".class", ".jar", ".war", ".pyc", ".pyo", ".wasm",
        ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".tiff", ".webp",
        ".mp3", ".mp4", ".avi", ".mov", ".wav", ".flac",
        ".zip", ".tar", ".gz", ".bz2", ".xz", ".7z", ".rar", ".nupkg",
        ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
        ".ttf", ".otf", ".woff", ".woff2", ".eot",
        ".db", ".sqlite", ".mdb",
    }
)

# File extension to language mapping
EXT_LANGUAGE_MAP = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "java",
    ".cs": "csharp",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".hpp": "cpp",
}

# Extensions whose matches rank higher in direct search
SOURCE_EXTENSIONS = frozenset(EXT_LANGUAGE_MAP)

SNIFF_BYTES = 8192


def detect_language(file_path: str) -> str | None:
    """Detect language from file extension."""
    return EXT_LANGUAGE_MAP.get(Path(file_path).suffix.lower())


def has_binary_extension(file_path: str | Path) -> bool:
    return Path(file_path).suffix.lower() in BINARY_EXTENSIONS


def looks_binary(head: bytes) -> bool:
    """A NUL byte in the leading bytes marks the content as binary."""
    return b"\x00" in head[:SNIFF_BYTES]


def is_binary_file(path: Path) -> bool:
    """Check extension first, then sniff the leading bytes.

    Raises:
        OSError: if the file cannot be read
    """
    if has_binary_extension(path):
        return True
    with path.open("rb") as handle:
        return looks_binary(handle.read(SNIFF_BYTES))
