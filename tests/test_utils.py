"""
Tests for utility functions
"""

import subprocess
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import cv2
import pandas as pd
import pytest

from gps_speedometer.utils import (
    check_ffmpeg_available,
    load_fix_log,
    pick_column,
    recording_filename,
    validate_video_file,
    write_recording,
)


class TestLoadFixLog:

    def test_normalized_columns(self, sample_fix_log):
        df = load_fix_log(sample_fix_log)

        assert list(df.columns) == ['timestamp_ms', 'latitude', 'longitude', 'speed_mps',
                                    'accuracy_m', 'heading_deg', 'error']
        assert len(df) == 5
        assert df['timestamp_ms'].tolist() == [1000, 2000, 3000, 3500, 4000]
        assert df.iloc[3]['error'] == 'timeout'

    def test_column_aliases(self, temp_dir):
        csv_path = temp_dir / "aliases.csv"
        csv_path.write_text("timestamp_ms,lat,lng,speed,heading\n0,1.5,2.5,3.0,270\n")

        df = load_fix_log(csv_path)

        row = df.iloc[0]
        assert row['latitude'] == 1.5
        assert row['longitude'] == 2.5
        assert row['speed_mps'] == 3.0
        assert row['heading_deg'] == 270
        assert pd.isna(row['accuracy_m'])

    def test_iso_timestamps(self):
        df = load_fix_log(pd.DataFrame({
            'timestamp': ['2024-01-01T00:00:00.000Z', '2024-01-01T00:00:01.500Z'],
            'latitude': [0.0, 0.0],
            'longitude': [0.0, 0.001],
        }))

        assert df['timestamp_ms'].iloc[1] - df['timestamp_ms'].iloc[0] == 1500

    def test_missing_timestamp_column(self):
        with pytest.raises(ValueError, match="timestamp"):
            load_fix_log(pd.DataFrame({'latitude': [0.0], 'longitude': [0.0]}))

    def test_rows_without_coordinates_dropped(self):
        df = load_fix_log(pd.DataFrame({
            'timestamp_ms': [0, 1000, 2000],
            'latitude': [0.0, None, 0.0],
            'longitude': [0.0, None, 0.001],
        }))

        assert df['timestamp_ms'].tolist() == [0, 2000]

    def test_sorted_by_timestamp(self):
        df = load_fix_log(pd.DataFrame({
            'timestamp_ms': [2000, 0, 1000],
            'latitude': [0.0, 0.0, 0.0],
            'longitude': [0.2, 0.0, 0.1],
        }))

        assert df['longitude'].tolist() == [0.0, 0.1, 0.2]

    def test_pick_column_case_insensitive(self):
        frame = pd.DataFrame(columns=['Lat', 'LON'])
        assert pick_column(frame, ['latitude', 'lat']) == 'Lat'
        assert pick_column(frame, ['lon']) == 'LON'
        assert pick_column(frame, ['speed']) is None


class TestRecordingExport:

    def test_recording_filename(self):
        when = datetime(2024, 5, 6, 7, 8, 9, 987654, tzinfo=timezone.utc)
        assert recording_filename(".mp4", when) == "speedometer-recording-2024-05-06T07-08-09.mp4"

    def test_write_recording(self, temp_dir):
        target_dir = temp_dir / "exports"

        path = write_recording(b"\x00\x01data", target_dir, "clip.mp4")

        assert path == target_dir / "clip.mp4"
        assert path.read_bytes() == b"\x00\x01data"
        # No temporary files left behind
        assert [p.name for p in target_dir.iterdir()] == ["clip.mp4"]


class TestVideoHelpers:

    def test_validate_video_file_success(self, mock_video_file):
        """Test successful video file validation"""
        with patch('cv2.VideoCapture') as mock_cap_class:
            mock_cap = Mock()
            mock_cap.isOpened.return_value = True
            mock_cap_class.return_value = mock_cap

            result = validate_video_file(mock_video_file)

            assert result is True
            mock_cap_class.assert_called_once_with(str(mock_video_file))
            mock_cap.release.assert_called_once()

    def test_validate_video_file_not_exists(self, temp_dir):
        """Test validation of non-existent file"""
        assert validate_video_file(temp_dir / "nonexistent.mp4") is False

    def test_validate_video_file_opencv_error(self, mock_video_file):
        """Test validation with OpenCV error"""
        with patch('cv2.VideoCapture', side_effect=cv2.error("OpenCV error")):
            assert validate_video_file(mock_video_file) is False

    def test_check_ffmpeg_available_success(self):
        """Test FFmpeg availability check - success"""
        with patch('subprocess.run') as mock_run:
            mock_run.return_value = Mock(returncode=0)

            assert check_ffmpeg_available() is True
            mock_run.assert_called_once_with(
                ['ffmpeg', '-version'],
                capture_output=True,
                check=True
            )

    def test_check_ffmpeg_available_not_found(self):
        """Test FFmpeg availability check - not found"""
        with patch('subprocess.run', side_effect=FileNotFoundError()):
            assert check_ffmpeg_available() is False

    def test_check_ffmpeg_available_error(self):
        """Test FFmpeg availability check - error"""
        with patch('subprocess.run', side_effect=subprocess.CalledProcessError(1, 'ffmpeg')):
            assert check_ffmpeg_available() is False
