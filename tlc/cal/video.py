"""
Video access for TLC recordings using PyAV (FFmpeg) as the decoding engine.

The recording is demuxed once, sequentially, by a background thread into a
:class:`PacketCache`. Decoding is done by :class:`Decoder` instances, one
per worker thread, each built from the same immutable
:class:`StreamDescriptor`; FFmpeg codec contexts are not reentrant and are
never shared between threads.

Parallel decoding of individual packets requires intra-coded recordings
(every packet decodes to exactly one frame on its own), which is what
high-speed cameras and lossless exports produce.

Frames are converted to packed RGB24. Only the green channel is used by
the pipeline.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np

try:
    import av
    from av.video.reformatter import VideoReformatter
except ImportError:
    raise ImportError(
        "PyAV is required for decoding TLC videos. "
        "Install it with: pip install av"
    )

from .errors import HandleError, VideoError, VideoIOError
from .packets import PacketCache

logger = logging.getLogger(__name__)

# Preview frames are downscaled by this factor in both directions
COMPRESSION_RATIO = 2

# Byte offset of the green sample in a packed RGB24 pixel
GREEN = 1


@dataclass(frozen=True)
class StreamDescriptor:
    """
    Immutable description of the video stream of a recording.

    Everything a worker needs to build its own decode context.

    Attributes:
        path: Path of the recording
        index: Stream index inside the container
        codec_name: FFmpeg decoder name
        width: Frame width in pixels
        height: Frame height in pixels
        pix_fmt: Native pixel format
        extradata: Codec extradata (may be None)
        frame_rate: Rounded average frame rate in fps
        total_frames: Number of frames in the stream
        duration: Duration in seconds
    """
    path: str
    index: int
    codec_name: str
    width: int
    height: int
    pix_fmt: Optional[str]
    extradata: Optional[bytes]
    frame_rate: int
    total_frames: int
    duration: float

    @property
    def shape(self) -> Tuple[int, int]:
        """(height, width) of each frame."""
        return (self.height, self.width)


def _open_container(video_path: str):
    try:
        return av.open(str(video_path))
    except (av.error.FFmpegError, OSError) as err:
        raise VideoIOError(f"Cannot open video ({err})", video_path) from err


def _best_video_stream(container, video_path: str):
    if not container.streams.video:
        raise VideoError("No video stream found", video_path)
    return container.streams.video[0]


def probe_video(video_path: str) -> StreamDescriptor:
    """
    Read stream metadata without decoding.

    Args:
        video_path: Path to the recording

    Returns:
        StreamDescriptor of the first video stream

    Raises:
        VideoIOError: If the file cannot be opened
        VideoError: If it holds no video stream
    """
    container = _open_container(video_path)
    try:
        stream = _best_video_stream(container, video_path)
        return _describe(container, stream, video_path)
    finally:
        container.close()


def _describe(container, stream, video_path: str) -> StreamDescriptor:
    ctx = stream.codec_context
    rate = stream.average_rate or stream.guessed_rate
    frame_rate = int(round(float(rate))) if rate else 0

    if stream.duration is not None and stream.time_base is not None:
        duration = float(stream.duration * stream.time_base)
    elif container.duration is not None:
        duration = container.duration / av.time_base
    else:
        duration = 0.0

    total_frames = stream.frames
    if not total_frames:
        total_frames = int(math.floor(duration * frame_rate))

    return StreamDescriptor(
        path=str(video_path),
        index=stream.index,
        codec_name=ctx.name,
        width=ctx.width,
        height=ctx.height,
        pix_fmt=ctx.pix_fmt,
        extradata=ctx.extradata,
        frame_rate=frame_rate,
        total_frames=total_frames,
        duration=duration,
    )


class Decoder:
    """
    Single-threaded decode context: codec context plus RGB24 reformatter.

    Build one per worker from a shared StreamDescriptor and reuse it for
    all packets that worker handles.
    """

    def __init__(self, descriptor: StreamDescriptor, compress: bool = False):
        """
        Args:
            descriptor: Stream to decode
            compress: Downscale output by COMPRESSION_RATIO (previews)

        Raises:
            VideoError: If the decoder cannot be constructed
        """
        try:
            ctx = av.CodecContext.create(descriptor.codec_name, 'r')
            ctx.width = descriptor.width
            ctx.height = descriptor.height
            if descriptor.pix_fmt is not None:
                ctx.pix_fmt = descriptor.pix_fmt
            if descriptor.extradata:
                ctx.extradata = descriptor.extradata
            # frame threading delays output, every packet must yield its own frame
            ctx.thread_count = 1
        except (av.error.FFmpegError, ValueError) as err:
            raise VideoError(f"Cannot create decoder '{descriptor.codec_name}' ({err})",
                             descriptor.path) from err

        self._ctx = ctx
        self._reformatter = VideoReformatter()
        self._path = descriptor.path
        if compress:
            self.out_width = descriptor.width // COMPRESSION_RATIO
            self.out_height = descriptor.height // COMPRESSION_RATIO
        else:
            self.out_width = descriptor.width
            self.out_height = descriptor.height

    def decode(self, packet) -> np.ndarray:
        """
        Decode one packet to an RGB24 array of shape (height, width, 3).

        Raises:
            VideoError: If the packet does not decode to a frame
        """
        try:
            frames = self._ctx.decode(packet)
        except av.error.FFmpegError as err:
            raise VideoError(f"Cannot decode packet ({err})", self._path) from err
        if not frames:
            raise VideoError("Packet did not decode to a frame", self._path)

        try:
            rgb = self._reformatter.reformat(
                frames[0],
                width=self.out_width,
                height=self.out_height,
                format='rgb24',
                interpolation='FAST_BILINEAR',
            )
        except (av.error.FFmpegError, ValueError) as err:
            raise VideoError(f"Cannot convert frame to RGB ({err})", self._path) from err
        return rgb.to_ndarray()

    def close(self) -> None:
        self._ctx = None
        self._reformatter = None


class VideoStream:
    """
    Open recording whose packets are demuxed into a PacketCache in the background.

    The demuxer starts on construction and stops after ``total_frames``
    video packets. Reaching the end of the file earlier is reported to
    the cache's waiters as a VideoError.

    Example:
        >>> descriptor = probe_video("case.avi")
        >>> with VideoStream(descriptor, descriptor.total_frames) as stream:
        ...     stream.cache.wait_for(10)
        ...     rgb = Decoder(descriptor).decode(stream.cache[9])
    """

    def __init__(
        self,
        descriptor: StreamDescriptor,
        total_frames: int,
        cache: Optional[PacketCache] = None
    ):
        self.descriptor = descriptor
        self.total_frames = total_frames
        self.cache = cache if cache is not None else PacketCache()
        self._stop = threading.Event()

        container = _open_container(descriptor.path)
        try:
            stream = container.streams[descriptor.index]
        except IndexError:
            container.close()
            raise VideoError("No video stream found", descriptor.path) from None

        self.cache.reset(total_frames)
        self._thread = threading.Thread(
            target=self._demux,
            args=(container, stream),
            name=f"demux-{Path(descriptor.path).name}",
            daemon=True,
        )
        self._thread.start()

    def _demux(self, container, stream) -> None:
        cnt = 0
        t0 = time.perf_counter()
        try:
            for packet in container.demux(stream):
                if self._stop.is_set() or cnt == self.total_frames:
                    break
                # demux ends with an empty flush packet
                if packet.size == 0:
                    continue
                self.cache.append(packet)
                cnt += 1
            if cnt < self.total_frames and not self._stop.is_set():
                self.cache.fail(VideoError(
                    f"End of stream after {cnt} of {self.total_frames} frames",
                    self.descriptor.path,
                ))
            else:
                logger.debug("Demuxed %d packets in %.2f s", cnt, time.perf_counter() - t0)
        except av.error.FFmpegError as err:
            self.cache.fail(VideoError(f"Cannot read packets ({err})", self.descriptor.path))
        except Exception as err:
            self.cache.fail(err)
            raise
        finally:
            container.close()

    def close(self) -> None:
        """Stop the demuxer and release every cached packet."""
        self._stop.set()
        self._thread.join()
        self.cache.clear()

    def __enter__(self) -> 'VideoStream':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"<VideoStream '{Path(self.descriptor.path).name}' "
            f"packets={len(self.cache)}/{self.total_frames}>"
        )


def extract_green(
    rgb: np.ndarray,
    top_left_pos: Tuple[int, int],
    region_shape: Tuple[int, int]
) -> np.ndarray:
    """
    Green samples of the calculation region, flattened row by row.

    For a packed frame with ``row_bytes = width * 3`` this is the byte at
    ``(tl_y + r) * row_bytes + (tl_x + c) * 3 + 1`` for every region row
    ``r`` and column ``c``.

    Args:
        rgb: Frame of shape (height, width, 3)
        top_left_pos: (y, x) of the region's top-left pixel
        region_shape: (height, width) of the region

    Returns:
        uint8 array of length height * width
    """
    (tl_y, tl_x), (cal_h, cal_w) = top_left_pos, region_shape
    region = rgb[tl_y:tl_y + cal_h, tl_x:tl_x + cal_w, GREEN]
    if region.shape != (cal_h, cal_w):
        raise VideoError("Calculation region exceeds the video frame", (top_left_pos, region_shape))
    return region.reshape(-1)


def read_intensity(stream: VideoStream, config, pool) -> np.ndarray:
    """
    Green-intensity matrix of the calculation region over the processed frames.

    Waits until the whole recording is demuxed, then decodes frames
    ``start_frame .. start_frame + frame_num`` in parallel; every worker
    lazily builds its own Decoder and reuses it.

    Args:
        stream: VideoStream of the recording
        config: TLCConfig with region and frame window
        pool: WorkerPool

    Returns:
        uint8 array of shape (frame_num, cal_h * cal_w); row = frame

    Raises:
        VideoError: On any decode failure
    """
    start_frame, frame_num = config.start_frame, config.frame_num
    if frame_num <= 0:
        raise VideoError("No frames to read, check the frame window", frame_num)

    t0 = time.perf_counter()
    stream.cache.wait_for(stream.total_frames)
    packets = stream.cache.slice(start_frame, start_frame + frame_num)
    if len(packets) < frame_num:
        raise VideoError(
            f"Frame window {start_frame}+{frame_num} exceeds the {stream.total_frames} cached frames",
            stream.descriptor.path,
        )

    g2d = np.zeros((frame_num, config.pix_num), dtype=np.uint8)
    local = threading.local()
    decoders: List[Decoder] = []
    lock = threading.Lock()

    def work(chunk: range) -> None:
        decoder = getattr(local, 'decoder', None)
        if decoder is None:
            decoder = Decoder(stream.descriptor)
            local.decoder = decoder
            with lock:
                decoders.append(decoder)
        for i in chunk:
            rgb = decoder.decode(packets[i])
            g2d[i] = extract_green(rgb, config.top_left_pos, config.region_shape)

    try:
        pool.for_each(work, frame_num)
    finally:
        for decoder in decoders:
            decoder.close()
        del packets

    logger.info("Read %d frames x %d pixels in %.2f s",
                frame_num, config.pix_num, time.perf_counter() - t0)
    return g2d


def read_frame(stream: VideoStream, frame_index: int, decoder: Decoder) -> np.ndarray:
    """
    Decode one frame for preview.

    Args:
        stream: VideoStream of the recording
        frame_index: Frame index in the recording
        decoder: Preview decoder (normally built with ``compress=True``)

    Returns:
        RGB24 array of shape (height, width, 3) at the decoder's resolution
    """
    if not 0 <= frame_index < stream.total_frames:
        raise HandleError(f"Frame out of range [0, {stream.total_frames})", frame_index)
    stream.cache.wait_for(frame_index + 1)
    return decoder.decode(stream.cache[frame_index])
