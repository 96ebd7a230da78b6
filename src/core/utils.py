import os
from datetime import datetime

END_TIME_FORMAT = "%m/%d/%Y %H:%M:%S"


def playlist_name(path: str) -> str:
    """
    Base name of a playlist file without its last extension.
    "/x/road.trip.audpl" -> "road.trip"
    """
    return os.path.splitext(os.path.basename(path))[0]


def format_end_time(value: datetime) -> str:
    # backend expects MM/dd/yyyy HH:mm:ss
    return value.strftime(END_TIME_FORMAT)


def parse_end_time(text: str) -> datetime:
    return datetime.strptime(text.strip(), END_TIME_FORMAT)


def format_size_mb(size_bytes: int) -> str:
    return f"{size_bytes / 1048576.0:.1f} MB"


def format_duration(seconds: float) -> str:
    total = int(round(seconds))
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    if h:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m}:{s:02d}"
