"""Shared fixtures: an in-process canvas server speaking the ASCII protocol."""

import _thread
import socket
import struct
import threading
import time

import pytest

from flutproto import ProtocolError, parse_px_command


class FakeCanvasServer:
    """Threaded test server that answers SIZE/HELP and records PX commands."""

    def __init__(self, width=800, height=600, help_text="HELP: PX x y rrggbb | SIZE | HELP",
                 close_on_connect=False):
        self.width = width
        self.height = height
        self.help_text = help_text
        self.close_on_connect = close_on_connect
        self.pixels = []
        self.connections = 0
        self.invalid_commands = 0
        self.lock = threading.Lock()
        self.running = False
        self.server_socket = None
        self._threads = []

    @property
    def address(self):
        host, port = self.server_socket.getsockname()
        return f"{host}:{port}"

    def start(self):
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server_socket.bind(("127.0.0.1", 0))
        self.server_socket.listen(64)
        self.server_socket.settimeout(0.1)
        self.running = True
        thread = threading.Thread(target=self._accept_loop, daemon=True)
        thread.start()
        self._threads.append(thread)
        return self

    def stop(self):
        self.running = False
        for thread in list(self._threads):
            thread.join(timeout=2.0)
        self.server_socket.close()

    def _accept_loop(self):
        while self.running:
            try:
                client_socket, _ = self.server_socket.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            with self.lock:
                self.connections += 1
            if self.close_on_connect:
                client_socket.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
                client_socket.close()
                continue
            thread = threading.Thread(target=self._handle_client, args=(client_socket,), daemon=True)
            thread.start()
            self._threads.append(thread)

    def _handle_client(self, client_socket):
        client_socket.settimeout(0.1)
        buffer = bytearray()
        try:
            while self.running:
                try:
                    data = client_socket.recv(65536)
                except socket.timeout:
                    continue
                except OSError:
                    break
                if not data:
                    break
                buffer.extend(data)
                *lines, rest = buffer.split(b"\n")
                buffer = bytearray(rest)
                for line in lines:
                    self._process_command(line.decode("ascii", errors="replace").strip(), client_socket)
        finally:
            client_socket.close()

    def _process_command(self, command, client_socket):
        if not command:
            return
        if command == "SIZE":
            client_socket.sendall(f"SIZE {self.width} {self.height}\r\n".encode())
        elif command == "HELP":
            client_socket.sendall(f"{self.help_text}\n".encode())
        else:
            try:
                pixel = parse_px_command(command)
            except ProtocolError:
                with self.lock:
                    self.invalid_commands += 1
                return
            with self.lock:
                self.pixels.append(pixel)

    def received(self):
        with self.lock:
            return list(self.pixels)

    def wait_for_pixels(self, count, timeout=5.0):
        deadline = time.time() + timeout
        while time.time() < deadline:
            with self.lock:
                if len(self.pixels) >= count:
                    return True
            time.sleep(0.01)
        return False


def interrupt_main_after_pixels(server, count, timeout=10.0):
    """Deliver a KeyboardInterrupt to the main thread once the server has seen ``count`` pixels."""
    server.wait_for_pixels(count, timeout)
    _thread.interrupt_main()


@pytest.fixture
def make_canvas_server():
    servers = []

    def factory(**kwargs):
        server = FakeCanvasServer(**kwargs).start()
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.stop()


@pytest.fixture
def canvas_server(make_canvas_server):
    return make_canvas_server()


@pytest.fixture
def dead_address():
    """An address nothing is listening on."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    host, port = sock.getsockname()
    sock.close()
    return f"{host}:{port}"


@pytest.fixture
def interrupt_after():
    """Start a thread that interrupts the main thread once a server has seen enough pixels."""
    threads = []

    def start(server, count):
        thread = threading.Thread(target=interrupt_main_after_pixels, args=(server, count), daemon=True)
        thread.start()
        threads.append(thread)

    yield start
    for thread in threads:
        thread.join(timeout=15.0)
