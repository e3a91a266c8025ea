from pathlib import Path

VIDEO_EXTENSIONS = {
    ".mp4", ".mov", ".mkv", ".avi", ".webm", ".m4v", ".flv", ".wmv", ".mpg", ".mpeg", ".3gp",
}


class OutputNamer:
    """Places `<stem><suffix><extension>` next to the source, never reusing a name."""

    def __init__(self, suffix: str = "_compressed", extension: str = ".mp4"):
        self.suffix = suffix
        self.extension = extension if extension.startswith(".") else f".{extension}"

    def __call__(self, source: Path) -> Path:
        base = source.with_name(f"{source.stem}{self.suffix}{self.extension}")
        if not base.exists():
            return base
        counter = 1
        while True:
            candidate = base.with_name(f"{base.stem} ({counter}){base.suffix}")
            if not candidate.exists():
                return candidate
            counter += 1


def is_video_file(path: Path) -> bool:
    return path.suffix.lower() in VIDEO_EXTENSIONS
