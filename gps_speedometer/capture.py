"""
Camera capture, overlay compositing and recording
"""

import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

import cv2
import numpy as np

from .core import SpeedometerError, TrackingSession, Unit
from .overlay import OverlayRenderer
from .utils import recording_filename, write_recording

logger = logging.getLogger(__name__)

# Longer capture gaps restart the cadence instead of back-filling repeated frames
MAX_CAPTURE_GAP = 1.0


class CameraUnavailableError(SpeedometerError):
    """Raised when the media source cannot provide a camera stream"""


class EncoderError(SpeedometerError):
    """Raised when the recording encoder cannot be started or fails"""


class CaptureState(Enum):
    CAMERA_OFF = "camera_off"
    CAMERA_ON = "camera_on"
    RECORDING = "recording"


@dataclass(frozen=True)
class MediaConstraints:
    facing: str = "environment"
    audio: bool = True
    width: int = 1280
    height: int = 720


class MediaTrack:
    """A single stoppable track of a media stream"""

    kind = "unknown"

    def __init__(self):
        self.ready_state = "live"

    @property
    def live(self) -> bool:
        return self.ready_state == "live"

    def stop(self) -> None:
        self.ready_state = "ended"


class VideoTrack(MediaTrack):
    """Video frames from an OpenCV capture (camera device or video file)"""

    kind = "video"

    def __init__(self, capture: cv2.VideoCapture):
        super().__init__()
        self.capture = capture

    @property
    def size(self) -> Tuple[int, int]:
        return (int(self.capture.get(cv2.CAP_PROP_FRAME_WIDTH)),
                int(self.capture.get(cv2.CAP_PROP_FRAME_HEIGHT)))

    @property
    def fps(self) -> float:
        return float(self.capture.get(cv2.CAP_PROP_FPS) or 0.0)

    @property
    def position_seconds(self) -> float:
        return float(self.capture.get(cv2.CAP_PROP_POS_MSEC) or 0.0) / 1000

    def read(self) -> Optional[np.ndarray]:
        """Next BGR frame, or None once the track has ended"""
        if not self.live:
            return None
        ok, frame = self.capture.read()
        if not ok:
            logger.debug("Video track ran out of frames")
            self.ready_state = "ended"
            return None
        return frame

    def stop(self) -> None:
        if self.live:
            self.capture.release()
        super().stop()


class AudioTrack(MediaTrack):
    """
    Audio handed to ffmpeg as an extra input

    File tracks replay the audio of the source video from the recording start
    position; device tracks read a live ffmpeg input such as ``pulse:default``.
    """

    kind = "audio"

    def __init__(self, path: Optional[Path] = None, device: Optional[str] = None):
        super().__init__()
        if (path is None) == (device is None):
            raise ValueError("AudioTrack needs exactly one of path or device")
        self.path = path
        self.device = device

    def ffmpeg_input_args(self, start_seconds: float = 0.0) -> List[str]:
        if self.path is not None:
            return ['-ss', f"{start_seconds:.3f}", '-i', str(self.path)]
        input_format, _, device = self.device.partition(":")
        return ['-f', input_format, '-i', device or 'default']


class MediaStream:
    """Video plus optional audio acquired together from a media source"""

    def __init__(self, video: VideoTrack, audio: Optional[AudioTrack] = None):
        self.video = video
        self.audio = audio

    def tracks(self) -> List[MediaTrack]:
        return [track for track in (self.video, self.audio) if track is not None]

    def stop(self) -> None:
        for track in self.tracks():
            track.stop()


class MediaSource:
    """Provides camera streams"""

    def acquire(self, constraints: MediaConstraints) -> MediaStream:
        raise NotImplementedError


class OpenCVMediaSource(MediaSource):
    """
    Camera device index or video file opened with OpenCV

    Args:
        source: Device index or path to a video file
        audio_input: ffmpeg ``format:device`` audio input for camera devices
    """

    def __init__(self, source: Union[int, str, Path], audio_input: Optional[str] = None):
        self.source = source
        self.audio_input = audio_input

    @property
    def is_file(self) -> bool:
        return not isinstance(self.source, int)

    def acquire(self, constraints: MediaConstraints) -> MediaStream:
        target = str(self.source) if self.is_file else self.source
        capture = cv2.VideoCapture(target)
        if not capture.isOpened():
            capture.release()
            raise CameraUnavailableError(f"could not open video source {self.source!r}")

        if not self.is_file:
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
            # OpenCV has no notion of camera facing; the device index selects the camera
            logger.debug(f"Requested {constraints.facing} camera at {constraints.width}x{constraints.height}")

        audio = None
        if constraints.audio:
            if self.is_file:
                audio = AudioTrack(path=Path(self.source))
            elif self.audio_input:
                audio = AudioTrack(device=self.audio_input)
            else:
                logger.warning("No audio input configured for camera device, recording video only")

        return MediaStream(VideoTrack(capture), audio)


class FrameSink:
    """Encoder that accepts composited frames and yields encoded chunks"""

    extension = ".mp4"

    def open(self, width: int, height: int, fps: float,
             audio: Optional[AudioTrack] = None, audio_start: float = 0.0) -> None:
        raise NotImplementedError

    def push(self, frame: np.ndarray) -> None:
        raise NotImplementedError

    def pull(self) -> List[bytes]:
        raise NotImplementedError

    def close(self) -> List[bytes]:
        """Flush the encoder and return the remaining chunks"""
        raise NotImplementedError


class FFmpegFrameSink(FrameSink):
    """
    Encodes raw BGR frames with ffmpeg into fragmented MP4 (H.264 + AAC)

    Frames are piped to ffmpeg's stdin; the fragmented output grows on disk
    and ``pull`` returns whatever was appended since the previous call.
    """

    def __init__(self, ffmpeg: str = 'ffmpeg', preset: str = 'veryfast'):
        self.ffmpeg = ffmpeg
        self.preset = preset
        self.process: Optional[subprocess.Popen] = None
        self.output_path: Optional[Path] = None
        self.size: Optional[Tuple[int, int]] = None
        self._read_offset = 0
        self._errors = None

    def build_command(self, width: int, height: int, fps: float,
                      audio: Optional[AudioTrack], audio_start: float) -> List[str]:
        cmd = [
            self.ffmpeg, '-y', '-loglevel', 'error',
            '-f', 'rawvideo', '-pix_fmt', 'bgr24',
            '-s', f'{width}x{height}', '-r', f'{fps:g}',
            '-i', 'pipe:0',
        ]
        if audio is not None:
            cmd += audio.ffmpeg_input_args(audio_start)
        cmd += ['-map', '0:v:0']
        if audio is not None:
            # Optional mapping: sources without an audio stream record silently
            cmd += ['-map', '1:a:0?', '-c:a', 'aac', '-shortest']
        cmd += [
            '-c:v', 'libx264', '-preset', self.preset, '-pix_fmt', 'yuv420p',
            '-movflags', 'frag_keyframe+empty_moov+default_base_moof',
            '-f', 'mp4', str(self.output_path),
        ]
        return cmd

    def open(self, width: int, height: int, fps: float,
             audio: Optional[AudioTrack] = None, audio_start: float = 0.0) -> None:
        fd, path = tempfile.mkstemp(prefix="speedometer-", suffix=self.extension)
        # ffmpeg recreates the file; the descriptor only reserves the name
        os.close(fd)
        Path(path).unlink()

        self.output_path = Path(path)
        self.size = (width, height)
        self._read_offset = 0

        cmd = self.build_command(width, height, fps, audio, audio_start)
        logger.debug(f"Starting encoder: {' '.join(cmd)}")
        # ffmpeg diagnostics go to a file; nothing drains a pipe while frames are written
        self._errors = tempfile.TemporaryFile()
        try:
            self.process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=self._errors,
            )
        except FileNotFoundError:
            self._close_errors()
            raise EncoderError("FFmpeg not found. Please install FFmpeg.")

    def push(self, frame: np.ndarray) -> None:
        if self.process is None:
            raise EncoderError("Encoder is not open")

        height, width = frame.shape[:2]
        if (width, height) != self.size:
            frame = cv2.resize(frame, self.size)

        try:
            self.process.stdin.write(np.ascontiguousarray(frame).tobytes())
        except BrokenPipeError:
            self.process.wait()
            raise EncoderError(f"FFmpeg failed: {self.error_output()}")

    def error_output(self) -> str:
        """Everything ffmpeg has written to stderr so far"""
        if self._errors is None:
            return ""
        self._errors.seek(0)
        return self._errors.read().decode(errors='replace').strip()

    def _close_errors(self) -> None:
        if self._errors is not None:
            self._errors.close()
            self._errors = None

    def pull(self) -> List[bytes]:
        if self.output_path is None or not self.output_path.exists():
            return []

        with open(self.output_path, 'rb') as f:
            f.seek(self._read_offset)
            data = f.read()
        self._read_offset += len(data)
        return [data] if data else []

    def close(self) -> List[bytes]:
        if self.process is None:
            return []

        process = self.process
        self.process = None
        try:
            process.stdin.close()
        except BrokenPipeError:
            pass
        returncode = process.wait()

        try:
            if returncode != 0:
                raise EncoderError(f"FFmpeg failed: {self.error_output()}")
            return self.pull()
        finally:
            self._close_errors()
            if self.output_path is not None:
                self.output_path.unlink(missing_ok=True)


class RecordingBuffer:
    """Encoded chunks of one recording, finalized into a single blob"""

    def __init__(self, extension: str = ".mp4"):
        self.extension = extension
        self.chunks: List[bytes] = []
        self.blob: Optional[bytes] = None

    def __len__(self) -> int:
        return len(self.chunks)

    @property
    def is_empty(self) -> bool:
        return not self.chunks

    @property
    def size_bytes(self) -> int:
        return sum(len(chunk) for chunk in self.chunks)

    def extend(self, chunks: List[bytes]) -> None:
        self.chunks.extend(chunk for chunk in chunks if chunk)

    def finalize(self) -> bytes:
        self.blob = b"".join(self.chunks)
        return self.blob

    def clear(self) -> None:
        self.chunks = []
        self.blob = None


class CaptureController:
    """
    Drives the camera, the overlay and the recorder

    ``on_frame`` is the frame-clock handler: it composites the overlay onto
    every camera frame and, while recording, feeds the encoder at a fixed
    ``capture_fps`` regardless of how often the clock ticks.
    """

    def __init__(self, session: TrackingSession, media_source: MediaSource,
                 renderer: Optional[OverlayRenderer] = None,
                 sink_factory: Callable[[], FrameSink] = FFmpegFrameSink,
                 unit: Unit = Unit.MPH,
                 capture_fps: float = 30.0,
                 constraints: Optional[MediaConstraints] = None):
        self.session = session
        self.media_source = media_source
        self.renderer = renderer or OverlayRenderer()
        self.sink_factory = sink_factory
        self.unit = unit
        self.capture_fps = capture_fps
        self.constraints = constraints or MediaConstraints()

        self.state = CaptureState.CAMERA_OFF
        self.camera_error: Optional[str] = None
        self.stream: Optional[MediaStream] = None
        self.sink: Optional[FrameSink] = None
        self.buffer = RecordingBuffer()
        self.preview: Optional[np.ndarray] = None
        self.frames_recorded = 0

        self._last_frame: Optional[np.ndarray] = None
        self._next_capture_at: Optional[float] = None

    @property
    def is_recording(self) -> bool:
        return self.state is CaptureState.RECORDING

    @property
    def stream_ended(self) -> bool:
        """True when a file-backed stream has delivered its last frame"""
        return self.stream is not None and not self.stream.video.live

    def start_camera(self) -> bool:
        """Acquire the camera stream; failures are reported through ``camera_error``"""
        if self.state is not CaptureState.CAMERA_OFF:
            return True

        try:
            self.stream = self.media_source.acquire(self.constraints)
        except CameraUnavailableError as e:
            self.camera_error = f"Camera unavailable: {e}"
            logger.warning(self.camera_error)
            return False

        self.camera_error = None
        self.preview = None
        self._last_frame = None
        self.state = CaptureState.CAMERA_ON
        logger.info("Camera started")
        return True

    def on_frame(self, now: float) -> Optional[np.ndarray]:
        """
        Frame-clock tick

        Args:
            now: Host clock reading in seconds

        Returns:
            The composited frame, or None when the camera is off or has not
            produced a frame yet
        """
        if self.state is CaptureState.CAMERA_OFF or self.stream is None:
            return None

        frame = self.stream.video.read()
        if frame is None:
            frame = self._last_frame
            if frame is None:
                return None
        self._last_frame = frame

        composited = self.renderer.render_session(frame, self.session, self.unit)
        self.preview = composited

        if self.is_recording:
            self._capture(composited, now)

        return composited

    def _capture(self, composited: np.ndarray, now: float) -> None:
        interval = 1.0 / self.capture_fps
        if self._next_capture_at is None:
            self._next_capture_at = now
        if now + 1e-9 < self._next_capture_at:
            return

        if now - self._next_capture_at > MAX_CAPTURE_GAP:
            logger.warning(f"Frame clock stalled for {now - self._next_capture_at:.2f}s; "
                           f"restarting the capture cadence")
            self._next_capture_at = now

        # A slow frame clock repeats the current frame so the stream keeps its fixed rate
        while now + 1e-9 >= self._next_capture_at:
            self.sink.push(composited)
            self.frames_recorded += 1
            self._next_capture_at += interval

        self.buffer.extend(self.sink.pull())

    def start_recording(self) -> bool:
        """Begin recording the composited stream; needs the camera on and tracking active"""
        if self.state is not CaptureState.CAMERA_ON:
            logger.warning(f"Cannot start recording while {self.state.value}")
            return False
        if not self.session.is_tracking:
            logger.warning("Recording rejected: speed tracking is not active")
            return False

        video = self.stream.video
        width, height = video.size
        sink = self.sink_factory()
        sink.open(width, height, self.capture_fps, self.stream.audio, video.position_seconds)

        self.sink = sink
        self.buffer = RecordingBuffer(sink.extension)
        self.frames_recorded = 0
        self._next_capture_at = None
        self.state = CaptureState.RECORDING
        logger.info(f"Recording started at {width}x{height}, {self.capture_fps:g} fps")
        return True

    def stop_recording(self) -> Optional[bytes]:
        """Finalize the recording into a blob; returns None when not recording"""
        if not self.is_recording:
            return None

        try:
            self.buffer.extend(self.sink.close())
        finally:
            self.sink = None
            self.state = CaptureState.CAMERA_ON

        blob = self.buffer.finalize()
        logger.info(f"Recording stopped: {self.frames_recorded} frames, {len(blob)} bytes")
        return blob

    def stop_camera(self) -> None:
        """Stop any recording, release the stream and turn the camera off"""
        if self.state is CaptureState.CAMERA_OFF:
            return

        try:
            self.stop_recording()
        finally:
            if self.stream is not None:
                self.stream.stop()
            self.stream = None
            self.preview = None
            self._last_frame = None
            self.state = CaptureState.CAMERA_OFF
            logger.info("Camera stopped")

    def export_recording(self, directory: Union[str, Path] = ".") -> Optional[Path]:
        """Write the finalized recording to ``directory`` and clear the buffer"""
        if self.buffer.is_empty or self.buffer.blob is None:
            return None

        filename = recording_filename(self.buffer.extension)
        path = write_recording(self.buffer.blob, Path(directory), filename)
        self.buffer.clear()
        logger.info(f"Recording exported to {path}")
        return path
