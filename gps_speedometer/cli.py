"""
Command-line interface for GPS Speedometer
"""

import contextlib
import logging
import sys
from pathlib import Path

import click

from .capture import (
    CaptureController,
    EncoderError,
    FFmpegFrameSink,
    MediaConstraints,
    OpenCVMediaSource,
)
from .config import config
from .core import TrackingSession, Unit
from .geo import ReplayPositionSource, WatchOptions
from .overlay import OverlayRenderer
from .runner import MonotonicClock, SpeedometerRunner, VirtualClock
from .utils import check_ffmpeg_available, load_fix_log, validate_video_file

UNIT_CHOICE = click.Choice(['mph', 'kmh'], case_sensitive=False)


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_session(source: ReplayPositionSource) -> TrackingSession:
    """Tracking session configured from the config file"""
    return TrackingSession(
        source,
        WatchOptions(**config.get_geolocation_settings()),
        window_size=int(config.get('smoothing_window', 5)),
    )


def format_speed(value: float, unit: Unit) -> str:
    return f"{value:6.1f} {unit.label}"


@click.group()
def cli():
    """GPS Speedometer - smoothed GPS speed with a live video overlay"""
    pass


@cli.command()
@click.argument('fixes_path', type=click.Path(exists=True, path_type=Path))
@click.option('--unit', '-u', type=UNIT_CHOICE, default=None,
              help='Display unit (default: from config, mph)')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
def show(fixes_path, unit, verbose):
    """Replay a fix log and show the smoothed speed timeline"""
    setup_logging(verbose)
    unit = Unit.parse(unit or config.get_unit())

    try:
        df = load_fix_log(fixes_path)
    except (ValueError, OSError) as e:
        click.echo(click.style(f"Error reading fix log: {e}", fg='red'))
        sys.exit(1)

    source = ReplayPositionSource.from_dataframe(df)
    session = build_session(source)
    session.start()

    click.echo(click.style("GPS Speed Timeline", fg='blue', bold=True))
    click.echo(f"File: {fixes_path}")
    click.echo(f"Fixes: {len(df)}\n")
    click.echo("  Legend: D=device speed, P=derived from positions, X=source failure")

    offsets = sorted({event.offset_ms for event in source.events})
    for offset in offsets:
        source.poll(offset)
        events = [event for event in source.events if event.offset_ms == offset]
        for event in events:
            if event.error is not None:
                click.echo(f"  X {offset / 1000:7.1f}s: {event.error.message}")
                continue
            reading = event.reading
            status = "D" if reading.speed_mps is not None and reading.speed_mps >= 0 else "P"
            click.echo(f"  {status} {offset / 1000:7.1f}s: {format_speed(session.display_speed(unit), unit)}")

    click.echo(f"\nMax speed: {format_speed(session.display_max_speed(unit), unit).strip()}")
    if session.stats.accuracy_m is not None:
        click.echo(f"Last accuracy: ±{round(session.stats.accuracy_m)}m")
    if session.stats.heading_deg is not None:
        click.echo(f"Last heading: {round(session.stats.heading_deg)}°")
    if session.error:
        click.echo(click.style(f"Last error: {session.error}", fg='yellow'))

    session.stop()


@cli.command()
@click.argument('fixes_path', type=click.Path(exists=True, path_type=Path))
@click.option('--video', '-i', 'video_path',
              type=click.Path(exists=True, path_type=Path),
              help='Video file to overlay')
@click.option('--camera', '-c', type=int,
              help='Camera device index to capture live')
@click.option('--output', '-o', type=click.Path(path_type=Path),
              help='Directory for the exported recording (default: next to the video)')
@click.option('--unit', '-u', type=UNIT_CHOICE, default=None,
              help='Display unit (default: from config, mph)')
@click.option('--offset', default=0.0,
              help='Seconds into the video at which the first fix occurs (default: 0)')
@click.option('--duration', type=float,
              help='Stop after this many seconds (default: end of video, or end of fix log for cameras)')
@click.option('--record/--no-record', default=True,
              help='Record and export the composited video (default: True)')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
def replay(fixes_path, video_path, camera, output, unit, offset, duration, record, verbose):
    """
    Overlay the speed from a fix log onto video and record the result

    FIXES_PATH: CSV fix log (timestamp_ms, latitude, longitude, ...)
    """
    setup_logging(verbose)
    unit = Unit.parse(unit or config.get_unit())

    click.echo(click.style("GPS Speedometer", fg='blue', bold=True))

    if (video_path is None) == (camera is None):
        click.echo(click.style("Error: pass exactly one of --video or --camera", fg='red'))
        sys.exit(1)

    if video_path is not None and not validate_video_file(video_path):
        click.echo(click.style("Error: Invalid or unreadable video file", fg='red'))
        sys.exit(1)

    if record and not check_ffmpeg_available():
        click.echo(click.style("Error: FFmpeg not found. Please install FFmpeg.", fg='red'))
        sys.exit(1)

    try:
        df = load_fix_log(fixes_path)
    except (ValueError, OSError) as e:
        click.echo(click.style(f"Error reading fix log: {e}", fg='red'))
        sys.exit(1)

    source = ReplayPositionSource.from_dataframe(df)
    session = build_session(source)

    width, height = config.get_resolution()
    capture = CaptureController(
        session,
        OpenCVMediaSource(video_path if video_path is not None else camera,
                          audio_input=config.get_audio_input()),
        OverlayRenderer(max_speed=float(config.get('dial_max_speed', 200.0))),
        sink_factory=FFmpegFrameSink,
        unit=unit,
        capture_fps=float(config.get('capture_fps', 30.0)),
        constraints=MediaConstraints(width=width, height=height),
    )

    if not capture.start_camera():
        click.echo(click.style(f"Error: {capture.camera_error}", fg='red'))
        sys.exit(1)

    if video_path is not None:
        # Replay footage as fast as it encodes, one video frame per tick
        display_fps = capture.stream.video.fps or float(config.get('display_fps', 60.0))
        clock = VirtualClock()
    else:
        display_fps = float(config.get('display_fps', 60.0))
        clock = MonotonicClock()
        if duration is None:
            duration = offset + source.duration_ms / 1000

    def progress_callback(elapsed):
        if verbose:
            return
        click.echo(f"   Time: {elapsed:7.1f}s | Speed: {format_speed(session.display_speed(unit), unit)}", nl=False)
        click.echo("\r", nl=False)

    runner = SpeedometerRunner(session, capture, clock=clock, display_fps=display_fps,
                               fix_offset=offset, progress_callback=progress_callback)

    click.echo(f"Fix log: {fixes_path} ({len(df)} rows)")
    click.echo(f"Source: {video_path if video_path is not None else f'camera {camera}'}")

    session.start()
    try:
        if record:
            capture.start_recording()
        runner.run(until=lambda: capture.stream_ended, max_seconds=duration)
        capture.stop_camera()
    except KeyboardInterrupt:
        click.echo("\nStopped by user")
        capture.stop_camera()
    except EncoderError as e:
        click.echo(click.style(f"\nError: {e}", fg='red'))
        # The encoder already failed; stop_camera still releases the stream
        with contextlib.suppress(EncoderError):
            capture.stop_camera()
        sys.exit(1)
    finally:
        session.stop()

    click.echo()
    click.echo(f"Max speed: {format_speed(session.display_max_speed(unit), unit).strip()}")
    if session.error:
        click.echo(click.style(f"Last position error: {session.error}", fg='yellow'))

    if record:
        if output is None:
            output = video_path.parent if video_path is not None else Path.cwd()
        exported = capture.export_recording(output)
        if exported is None:
            click.echo(click.style("No frames were recorded", fg='yellow'))
        else:
            click.echo(f"Recording saved to {exported}")


if __name__ == '__main__':
    cli()
