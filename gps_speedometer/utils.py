"""
Utility functions for fix logs, video files and recording export
"""

import logging
import os
import subprocess
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Union

import cv2
import pandas as pd

logger = logging.getLogger(__name__)

RECORDING_PREFIX = "speedometer-recording"

COLUMN_ALIASES = {
    'latitude': ['latitude', 'lat'],
    'longitude': ['longitude', 'lon', 'lng', 'long'],
    'speed_mps': ['speed_mps', 'speed'],
    'accuracy_m': ['accuracy_m', 'accuracy'],
    'heading_deg': ['heading_deg', 'heading', 'course'],
    'error': ['error'],
}


def pick_column(frame: pd.DataFrame, candidates: Iterable[str]) -> Optional[str]:
    """Return the first candidate present in the frame (case-insensitive)"""
    lookup = {str(col).lower().strip(): col for col in frame.columns}
    for name in candidates:
        if name in lookup:
            return lookup[name]
    return None


def load_fix_log(source: Union[Path, str, pd.DataFrame]) -> pd.DataFrame:
    """
    Load a fix log into the normalized column layout

    Args:
        source: CSV path or an already loaded DataFrame

    Returns:
        DataFrame with ``timestamp_ms``, ``latitude``, ``longitude``,
        ``speed_mps``, ``accuracy_m``, ``heading_deg`` and ``error`` columns,
        ordered by timestamp
    """
    raw = source.copy() if isinstance(source, pd.DataFrame) else pd.read_csv(source)
    df = pd.DataFrame(index=raw.index)

    timestamp_col = pick_column(raw, ['timestamp_ms', 'time_ms'])
    if timestamp_col is not None:
        df['timestamp_ms'] = pd.to_numeric(raw[timestamp_col], errors='coerce')
    else:
        timestamp_col = pick_column(raw, ['timestamp', 'time', 'datetime'])
        if timestamp_col is None:
            raise ValueError("Fix log needs a timestamp_ms or timestamp column")
        values = raw[timestamp_col]
        if pd.api.types.is_numeric_dtype(values):
            df['timestamp_ms'] = values
        else:
            parsed = pd.to_datetime(values, utc=True, errors='coerce')
            df['timestamp_ms'] = (parsed - pd.Timestamp(0, tz='UTC')) // pd.Timedelta(milliseconds=1)

    for target, aliases in COLUMN_ALIASES.items():
        column = pick_column(raw, aliases)
        if target == 'error':
            df[target] = raw[column].where(raw[column].notna(), None) if column else None
        else:
            df[target] = pd.to_numeric(raw[column], errors='coerce') if column else float('nan')

    has_error = df['error'].map(lambda v: isinstance(v, str) and bool(v.strip()))
    valid = df['timestamp_ms'].notna() & (has_error | (df['latitude'].notna() & df['longitude'].notna()))
    dropped = int((~valid).sum())
    if dropped:
        logger.warning(f"Skipping {dropped} fix log rows without timestamp or coordinates")

    df = df[valid].copy()
    df['timestamp_ms'] = df['timestamp_ms'].astype('int64')
    return df.sort_values('timestamp_ms', kind='stable').reset_index(drop=True)


def validate_video_file(video_path: Path) -> bool:
    """Validate that video file exists and is readable"""
    if not video_path.exists():
        return False

    # Try to open with OpenCV
    try:
        cap = cv2.VideoCapture(str(video_path))
        ret = cap.isOpened()
        cap.release()
        return ret
    except cv2.error:
        return False


def check_ffmpeg_available() -> bool:
    """Check if FFmpeg is available"""
    try:
        subprocess.run(['ffmpeg', '-version'],
                       capture_output=True, check=True)
        return True
    except (subprocess.CalledProcessError, FileNotFoundError):
        return False


def recording_filename(extension: str = ".mp4", when: Optional[datetime] = None) -> str:
    """
    Name for an exported recording

    The ISO 8601 timestamp is truncated to seconds and its colons are
    replaced with dashes so the name is valid on every filesystem.
    """
    when = when or datetime.now(timezone.utc)
    stamp = when.strftime("%Y-%m-%dT%H-%M-%S")
    return f"{RECORDING_PREFIX}-{stamp}{extension}"


def write_recording(blob: bytes, directory: Path, filename: str) -> Path:
    """Write a recording through a temporary file so readers never see a partial file"""
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / filename

    fd, temp_path = tempfile.mkstemp(dir=directory, prefix=".recording-", suffix=".part")
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(blob)
        os.replace(temp_path, target)
    except OSError:
        Path(temp_path).unlink(missing_ok=True)
        raise

    return target
