#!/usr/bin/env python3
"""
Pixelflut Streaming Client
Paints pixels, rectangles and images onto a Pixelflut canvas over several
concurrent connections, once or over and over until stopped.
"""

import argparse
import enum
import logging
import socket
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, List, NamedTuple, Optional, Sequence, Tuple

from flutimage import clip_pixels, rasterize
from flutproto import (
    CanvasBounds,
    CanvasConnectionError,
    Color,
    ConfigError,
    DEFAULT_PORT,
    Pixel,
    PixelflutError,
    encode_pixel,
    open_connection,
    parse_address,
    parse_color,
    query_help,
    query_size,
)

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4
DEFAULT_BATCH_SIZE = 20000
JOIN_POLL_INTERVAL = 0.5


@dataclass(frozen=True)
class RunConfig:
    """Everything one drawing run needs. Fixed for the duration of the run."""

    server_address: str
    worker_count: int = DEFAULT_WORKERS
    batch_size: int = DEFAULT_BATCH_SIZE
    repeat: bool = False
    image_path: Optional[str] = None
    offset: Tuple[int, int] = (0, 0)
    alpha: bool = False
    scale: float = 1.0
    connect_timeout: Optional[float] = 10.0

    def __post_init__(self):
        parse_address(self.server_address)
        if self.worker_count < 1:
            raise ConfigError(f"worker_count must be at least 1, got {self.worker_count}")
        if self.batch_size < 1:
            raise ConfigError(f"batch_size must be at least 1, got {self.batch_size}")
        if self.scale <= 0:
            raise ConfigError(f"scale must be positive, got {self.scale}")
        if len(self.offset) != 2 or min(self.offset) < 0:
            raise ConfigError(f"offset must be two non-negative integers, got {self.offset}")


# --------------------------------------------------------------------------
# Partitioning and batching
# --------------------------------------------------------------------------

def partition_pixels(pixels: Sequence[Pixel], worker_count: int) -> List[List[Pixel]]:
    """Split ``pixels`` into ``worker_count`` contiguous shards.

    Every shard gets ``len(pixels) // worker_count`` pixels and the last one
    also takes the remainder, so nothing is lost. With fewer pixels than
    workers, the first shards get one pixel each and the rest are empty.
    """
    if worker_count < 1:
        raise ConfigError(f"worker_count must be at least 1, got {worker_count}")
    total = len(pixels)
    span = max(total // worker_count, 1)
    shards = []
    for i in range(worker_count):
        start = min(span * i, total)
        end = total if i == worker_count - 1 else min(span * (i + 1), total)
        shards.append(list(pixels[start:end]))
    return shards


class Batch(NamedTuple):
    payload: bytes
    count: int


def iter_batches(shard: Iterable[Pixel], batch_size: int) -> Iterator[Batch]:
    """Group encoded commands into payloads of at most ``batch_size`` pixels."""
    if batch_size < 1:
        raise ConfigError(f"batch_size must be at least 1, got {batch_size}")
    commands = []
    for x, y, color in shard:
        commands.append(encode_pixel(x, y, color))
        if len(commands) >= batch_size:
            yield Batch(b"".join(commands), len(commands))
            commands = []
    if commands:
        yield Batch(b"".join(commands), len(commands))


# --------------------------------------------------------------------------
# Workers
# --------------------------------------------------------------------------

class WorkerState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SENDING = "sending"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = (WorkerState.DONE, WorkerState.FAILED, WorkerState.CANCELLED)


def _write_batch(sock: socket.socket, batch: Batch):
    try:
        # sendall keeps writing until the whole payload is out or the socket fails
        sock.sendall(batch.payload)
    except OSError as e:
        raise CanvasConnectionError(f"Write failed: {e}") from e


def send_once(sock: socket.socket, batches: Sequence[Batch], cancel: Optional[threading.Event] = None,
              on_batch: Optional[Callable[[Batch], None]] = None) -> bool:
    """Write every batch once, in order.

    Returns False if ``cancel`` was set before all batches went out.
    """
    for batch in batches:
        if cancel is not None and cancel.is_set():
            return False
        _write_batch(sock, batch)
        if on_batch:
            on_batch(batch)
    return True


def send_forever(sock: socket.socket, batches: Sequence[Batch], cancel: threading.Event,
                 on_batch: Optional[Callable[[Batch], None]] = None,
                 on_pass: Optional[Callable[[], None]] = None):
    """Keep re-sending the same batches until ``cancel`` is set or a write fails."""
    if not batches:
        return
    while send_once(sock, batches, cancel, on_batch):
        if on_pass:
            on_pass()


class WorkerHandle:
    """One send loop bound to its own connection and its own shard."""

    def __init__(self, index: int, address: str, batches: List[Batch], repeat: bool = False,
                 cancel: Optional[threading.Event] = None, connect_timeout: Optional[float] = 10.0):
        self.index = index
        self.address = address
        self.batches = batches
        self.repeat = repeat
        self.cancel = cancel if cancel is not None else threading.Event()
        self.connect_timeout = connect_timeout
        self.state = WorkerState.IDLE
        self.error: Optional[BaseException] = None
        self.pixels_sent = 0
        self.passes = 0
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self.state in (WorkerState.CONNECTING, WorkerState.SENDING)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def failed(self) -> bool:
        return self.state is WorkerState.FAILED

    def start(self):
        self._thread = threading.Thread(target=self.run, name=f"flutstream-worker-{self.index}", daemon=True)
        self._thread.start()

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _count_batch(self, batch: Batch):
        self.pixels_sent += batch.count

    def _count_pass(self):
        self.passes += 1

    def run(self):
        """Connect, send the shard, and record how it ended."""
        if not self.batches:
            self.state = WorkerState.DONE
            return

        self.state = WorkerState.CONNECTING
        try:
            sock = open_connection(self.address, self.connect_timeout)
        except PixelflutError as e:
            logger.error("Worker %d failed to connect: %s", self.index, e)
            self.error = e
            self.state = WorkerState.FAILED
            return

        self.state = WorkerState.SENDING
        logger.debug("Worker %d socket connected, %d batches", self.index, len(self.batches))
        try:
            if self.repeat:
                send_forever(sock, self.batches, self.cancel, self._count_batch, self._count_pass)
                completed = False
            else:
                completed = send_once(sock, self.batches, self.cancel, self._count_batch)
                if completed:
                    self.passes = 1
        except Exception as e:
            logger.error("Worker %d send error: %s", self.index, e)
            self.error = e
            self.state = WorkerState.FAILED
            return
        finally:
            sock.close()

        self.state = WorkerState.DONE if completed else WorkerState.CANCELLED
        logger.debug("Worker %d %s after %d pixels", self.index, self.state.value, self.pixels_sent)


# --------------------------------------------------------------------------
# Orchestration
# --------------------------------------------------------------------------

class WorkerOutcome(NamedTuple):
    index: int
    state: WorkerState
    pixels_sent: int
    error: Optional[BaseException]


@dataclass
class Summary:
    """What a run attempted and how each worker ended."""

    pixels_attempted: int
    workers: List[WorkerOutcome] = field(default_factory=list)
    elapsed: float = 0.0
    interrupted: bool = False

    @property
    def pixels_sent(self) -> int:
        return sum(outcome.pixels_sent for outcome in self.workers)

    @property
    def failures(self) -> List[WorkerOutcome]:
        return [outcome for outcome in self.workers if outcome.state is WorkerState.FAILED]

    @property
    def first_error(self) -> Optional[BaseException]:
        failures = self.failures
        return failures[0].error if failures else None

    @property
    def ok(self) -> bool:
        return not self.failures

    def lines(self) -> List[str]:
        rate = self.pixels_sent / self.elapsed if self.elapsed > 0 else 0
        lines = [
            f"Pixels attempted: {self.pixels_attempted:,}, sent: {self.pixels_sent:,} "
            f"with {len(self.workers)} workers in {self.elapsed:.3f}s ({rate:.0f} pps), "
            f"{len(self.failures)} failed" + (", interrupted" if self.interrupted else "")
        ]
        for outcome in self.failures:
            lines.append(f"Worker {outcome.index} failed: {outcome.error}")
        return lines


def _wait_for_workers(workers: List[WorkerHandle], cancel: threading.Event) -> bool:
    """Block until every worker has stopped.

    A KeyboardInterrupt cancels the workers instead of propagating; the
    return value tells whether that happened.
    """
    try:
        while any(worker.is_alive() for worker in workers):
            for worker in workers:
                worker.join(JOIN_POLL_INTERVAL)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down workers...")
        cancel.set()
        for worker in workers:
            worker.join(timeout=1.0)
        return True
    return False


def stream_pixels(pixels: Iterable[Pixel], config: RunConfig, bounds: Optional[CanvasBounds] = None,
                  cancel: Optional[threading.Event] = None) -> Summary:
    """Clip, shard and send ``pixels`` over ``config.worker_count`` connections.

    Blocks until every worker has finished. In repeat mode that means until
    ``cancel`` is set, the process is interrupted, or every worker has
    failed. An interrupt still returns a Summary, marked ``interrupted``.
    """
    if cancel is None:
        cancel = threading.Event()
    if bounds is None:
        bounds = query_size(config.server_address, config.connect_timeout)

    clipped = clip_pixels(pixels, bounds)
    shards = partition_pixels(clipped, config.worker_count)
    workers = [
        WorkerHandle(i, config.server_address, list(iter_batches(shard, config.batch_size)),
                     repeat=config.repeat, cancel=cancel, connect_timeout=config.connect_timeout)
        for i, shard in enumerate(shards)
        if shard
    ]

    logger.info("Sending %d pixels to %s with %d workers%s", len(clipped), config.server_address,
                len(workers), " (repeating)" if config.repeat else "")
    start_time = time.time()
    for worker in workers:
        worker.start()
    interrupted = _wait_for_workers(workers, cancel)

    return Summary(
        pixels_attempted=len(clipped),
        workers=[WorkerOutcome(w.index, w.state, w.pixels_sent, w.error) for w in workers],
        elapsed=time.time() - start_time,
        interrupted=interrupted,
    )


def stream_image(config: RunConfig, cancel: Optional[threading.Event] = None) -> Summary:
    """Paint ``config.image_path`` onto the canvas at ``config.offset``."""
    if not config.image_path:
        raise ConfigError("stream_image needs an image_path")
    bounds = query_size(config.server_address, config.connect_timeout)
    raster = rasterize(config.image_path, config.offset, alpha=config.alpha, scale=config.scale)
    return stream_pixels(raster, config, bounds, cancel)


# --------------------------------------------------------------------------
# One-shot commands
# --------------------------------------------------------------------------

def rect_pixels(x0: int, y0: int, x1: int, y1: int, color: Color) -> Iterator[Pixel]:
    """Pixels of the rectangle spanned by two inclusive corners, row by row."""
    left, right = sorted((x0, x1))
    top, bottom = sorted((y0, y1))
    for y in range(top, bottom + 1):
        for x in range(left, right + 1):
            yield Pixel(x, y, color)


def fill_rect(config: RunConfig, x0: int, y0: int, x1: int, y1: int, color: Color,
              cancel: Optional[threading.Event] = None) -> Summary:
    return stream_pixels(rect_pixels(x0, y0, x1, y1, color), config, cancel=cancel)


def set_pixel(address: str, x: int, y: int, color: Color, timeout: Optional[float] = 10.0):
    sock = open_connection(address, timeout)
    try:
        _write_batch(sock, Batch(encode_pixel(x, y, color), 1))
    finally:
        sock.close()


def canvas_size(address: str, timeout: Optional[float] = 10.0) -> CanvasBounds:
    return query_size(address, timeout)


def canvas_help(address: str, timeout: Optional[float] = 10.0) -> str:
    return query_help(address, timeout)


# --------------------------------------------------------------------------
# Command line
# --------------------------------------------------------------------------

def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stderr,
    )


def _non_negative(text: str) -> int:
    value = int(text)
    if value < 0:
        raise argparse.ArgumentTypeError(f"must be non-negative, got {value}")
    return value


def _positive(text: str) -> int:
    value = int(text)
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Pixelflut Streaming Client')
    parser.add_argument('-d', '--domain', default=f'localhost:{DEFAULT_PORT}',
                        help=f'Server address as host:port (default: localhost:{DEFAULT_PORT})')
    parser.add_argument('-t', '--threads', type=_positive, default=DEFAULT_WORKERS,
                        help=f'Number of concurrent connections (default: {DEFAULT_WORKERS})')
    parser.add_argument('-b', '--batch-size', type=_positive, default=DEFAULT_BATCH_SIZE,
                        help=f'Pixels per network write (default: {DEFAULT_BATCH_SIZE})')
    parser.add_argument('-r', '--repeat', action='store_true', help='Keep repainting until interrupted')
    parser.add_argument('--timeout', type=float, default=10.0, help='Connect timeout in seconds (default: 10)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')

    commands = parser.add_subparsers(dest='command', required=True)
    commands.add_parser('help', help='Print the server help text')
    commands.add_parser('size', help='Print the canvas size')

    pixel = commands.add_parser('pixel', help='Set a single pixel')
    pixel.add_argument('x', type=_non_negative)
    pixel.add_argument('y', type=_non_negative)
    pixel.add_argument('color', help='rrggbb or rrggbbaa')

    rect = commands.add_parser('rect', help='Fill a rectangle')
    rect.add_argument('start_x', type=_non_negative)
    rect.add_argument('start_y', type=_non_negative)
    rect.add_argument('end_x', type=_non_negative)
    rect.add_argument('end_y', type=_non_negative)
    rect.add_argument('color', help='rrggbb or rrggbbaa')

    image = commands.add_parser('image', help='Paint an image file or URL')
    image.add_argument('path', help='Image file or http(s) URL')
    image.add_argument('-x', type=_non_negative, default=0, help='X position (default: 0)')
    image.add_argument('-y', type=_non_negative, default=0, help='Y position (default: 0)')
    image.add_argument('-s', '--scale', type=float, default=1.0, help='Scale factor (default: 1.0)')
    image.add_argument('--alpha', action='store_true', help='Send alpha channel and skip transparent pixels')
    return parser


def run(args: argparse.Namespace) -> int:
    if args.command == 'help':
        print(canvas_help(args.domain, args.timeout))
        return 0
    if args.command == 'size':
        width, height = canvas_size(args.domain, args.timeout)
        print(f"{width}x{height}")
        return 0
    if args.command == 'pixel':
        set_pixel(args.domain, args.x, args.y, parse_color(args.color), args.timeout)
        return 0

    config = RunConfig(
        server_address=args.domain,
        worker_count=args.threads,
        batch_size=args.batch_size,
        repeat=args.repeat,
        image_path=getattr(args, 'path', None),
        offset=(getattr(args, 'x', 0), getattr(args, 'y', 0)),
        alpha=getattr(args, 'alpha', False),
        scale=getattr(args, 'scale', 1.0),
        connect_timeout=args.timeout,
    )
    if args.command == 'rect':
        summary = fill_rect(config, args.start_x, args.start_y, args.end_x, args.end_y, parse_color(args.color))
    else:
        summary = stream_image(config)

    for line in summary.lines():
        print(line)
    if summary.interrupted:
        return 130
    return 0 if summary.ok else 1


def main(argv: Optional[List[str]] = None) -> int:
    """Command line interface for the Pixelflut streaming client."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    try:
        return run(args)
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130
    except PixelflutError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
