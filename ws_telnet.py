# Interactive WebSocket tinkerer
# Lines typed at the prompt go out as text frames; whatever the server sends
# back is printed above the prompt. With -i, lines come from stdin instead,
# eg to replay a canned conversation: ws -i ws://localhost:4444/ <script.txt
# Note that it is your responsibility to correctly encode your outgoing
# messages, eg properly-formatted JSON.
import argparse
import asyncio
import collections
import functools
import logging
import os
import sys
import threading
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit
import websockets # ImportError? pip install websockets
from prompt_toolkit import PromptSession # ImportError? pip install prompt_toolkit
from prompt_toolkit.history import FileHistory, InMemoryHistory
from prompt_toolkit.patch_stdout import patch_stdout

VERSION = "0.2.1"
HISTORY_FILE = "~/.ws_history"
PROMPT = "> "
DRAIN_TIMEOUT = 2.0 # Seconds to wait for responses once stdin runs dry

log = logging.getLogger(__name__)

class ParseError(ValueError):
	"""The destination isn't a usable ws:// or wss:// URL"""

class ConnectionFailed(ConnectionError):
	"""The connection couldn't be established, or died uncleanly"""

class SessionClosed(Exception):
	"""The server closed the connection cleanly; there's nobody to send to"""

@dataclass(frozen=True)
class Config:
	url: str
	origin: str
	stdin: bool = False
	history_file: str = None

def parse_destination(url):
	"""Parse a websocket URL, failing fast on anything we can't connect to"""
	try:
		dest = urlsplit(url)
		dest.port # Raises ValueError if the port is garbage
	except ValueError as e:
		raise ParseError("parse %r: %s" % (url, e)) from None
	if dest.scheme not in ("ws", "wss"):
		raise ParseError("parse %r: scheme must be ws or wss, not %r" % (url, dest.scheme))
	if not dest.hostname:
		raise ParseError("parse %r: no host" % url)
	return dest

def derive_origin(dest):
	"""ws://host/path becomes http://host/path, and wss:// becomes https://"""
	return urlunsplit(dest._replace(scheme="https" if dest.scheme == "wss" else "http"))

def history_path():
	# If there's no discoverable home directory, expanduser leaves the tilde alone.
	path = os.path.expanduser(HISTORY_FILE)
	if path.startswith("~"): return None
	return path

def open_history(path):
	if path is None: return InMemoryHistory()
	return FileHistory(path)

class Session:
	"""One websocket connection, with inbound frames queued for a single reader

	State goes pending -> connected -> closed, or to errored if the handshake
	fails or the connection drops uncleanly. Nothing ever reconnects.
	"""
	def __init__(self, url, origin, connect=websockets.connect):
		self.url = url
		self.origin = origin
		self.connect = connect
		self.state = "pending"
		self.error = None
		self.sock = self.receiver = None
		self.connected = asyncio.Event()
		self.inbound = asyncio.Queue() # Frames in arrival order; None once the connection ends
		self.callbacks = collections.deque()
		self.answered = asyncio.Event(); self.answered.set()

	async def __aenter__(self):
		self.receiver = asyncio.create_task(self.receive())
		return self

	async def __aexit__(self, *exc):
		await self.close()

	def fail(self, exc):
		log.debug("Connection to %s failed", self.url, exc_info=exc)
		self.state = "errored"
		self.error = ConnectionFailed("%s: %s" % (self.url, str(exc) or type(exc).__name__))
		self.inbound.put_nowait(None)

	async def receive(self):
		log.debug("Connecting to %s (origin %s)", self.url, self.origin)
		try:
			self.sock = await self.connect(self.url, origin=self.origin)
		except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
			self.fail(e)
			return
		self.state = "connected"
		self.connected.set()
		log.debug("Connected to %s", self.url)
		try:
			async for msg in self.sock:
				self.inbound.put_nowait(msg)
		except websockets.ConnectionClosedError as e:
			self.fail(e)
			return
		log.debug("Connection to %s closed", self.url)
		self.state = "closed"
		self.inbound.put_nowait(None)

	async def wait_connected(self):
		"""Wait for the handshake to finish. Raises ConnectionFailed if it never will."""
		if not self.connected.is_set():
			waiter = asyncio.ensure_future(self.connected.wait())
			try:
				await asyncio.wait([waiter, self.receiver], return_when=asyncio.FIRST_COMPLETED)
			finally:
				waiter.cancel()
		if self.error: raise self.error

	async def send(self, text, callback=None):
		"""Send one text frame without waiting for a reply

		If a callback is given, it gets the next inbound frame not already
		claimed by an earlier send. That's a guess, not a correlation - the
		server is free to answer out of order, or not at all.

		Raises SessionClosed if the server has hung up cleanly, and
		ConnectionFailed if the connection is broken or was never made.
		"""
		if self.state == "closed":
			raise SessionClosed("%s: connection closed" % self.url)
		if self.state != "connected":
			raise self.error or ConnectionFailed("%s: not connected" % self.url)
		if callback:
			# Queue the callback first, in case the reply beats send() back to us
			self.callbacks.append(callback)
			self.answered.clear()
		log.debug("Sending %r", text)
		try:
			await self.sock.send(text)
		except websockets.ConnectionClosed as e:
			if callback in self.callbacks: self.callbacks.remove(callback)
			if not self.callbacks: self.answered.set()
			# Let the receiver see the close too, so the state is final before we report it
			if self.receiver: await asyncio.wait([self.receiver])
			if isinstance(e, websockets.ConnectionClosedOK):
				raise SessionClosed("%s: %s" % (self.url, e)) from e
			raise ConnectionFailed("%s: %s" % (self.url, e)) from e

	async def frames(self):
		"""Yield inbound frames in arrival order until the connection ends

		Frames claimed by a send() callback go to that callback instead. If the
		connection died rather than closing cleanly, raise ConnectionFailed at
		the end.
		"""
		while "moar frames":
			msg = await self.inbound.get()
			if msg is None: break
			if isinstance(msg, bytes): msg = msg.decode("utf-8", "replace")
			if self.callbacks:
				self.callbacks.popleft()(msg)
				if not self.callbacks: self.answered.set()
			else:
				yield msg
		if self.error: raise self.error

	async def drain(self, timeout):
		"""Wait up to timeout seconds for every pending callback to fire"""
		try:
			await asyncio.wait_for(self.answered.wait(), timeout)
		except asyncio.TimeoutError:
			log.warning("Gave up waiting for %d response(s)", len(self.callbacks))

	async def close(self):
		if self.state == "connected":
			log.debug("Closing connection to %s", self.url)
			await self.sock.close()
		if self.receiver and not self.receiver.done():
			self.receiver.cancel()
			try: await self.receiver
			except asyncio.CancelledError: pass
		if self.state in ("pending", "connected"): self.state = "closed"

async def print_frames(session, fmt):
	async for msg in session.frames():
		print(fmt % msg)

async def interact(session, read_line):
	await session.wait_connected()
	print("Connected to %s" % session.url)
	while True:
		try: line = await read_line()
		except (EOFError, KeyboardInterrupt): break
		try: await session.send(line)
		except SessionClosed: break

def read_lines(stream):
	"""Feed lines from a blocking stream into a queue, ending with None

	The reader is a daemon thread, so a read that never returns can't hold up
	shutdown. Works for pipes, ttys and plain files alike. Where the stream has
	an underlying byte buffer, lines are decoded here with replacement
	characters, so input that isn't valid UTF-8 still gets sent. A read error
	is logged and counts as the end of input.
	"""
	loop = asyncio.get_running_loop()
	lines = asyncio.Queue()
	stream = getattr(stream, "buffer", stream)
	def post(line):
		try: loop.call_soon_threadsafe(lines.put_nowait, line)
		except RuntimeError: pass # Event loop closed underneath us; nobody's listening any more
	def reader():
		try:
			for line in stream:
				if isinstance(line, bytes): line = line.decode("utf-8", "replace")
				post(line)
		except (OSError, ValueError) as e:
			log.error("Can't read input, stopping: %s", e)
		post(None)
	threading.Thread(target=reader, daemon=True).start()
	return lines

async def stream_lines(session, stream):
	print("Reading from stdin:")
	await session.wait_connected()
	print("Connected")
	lines = read_lines(stream)
	while "moar lines":
		line = await lines.get()
		if line is None: break
		line = line.rstrip("\r\n")
		print("Got stdin: %s" % line)
		try: await session.send(line, lambda resp: print("Got response: %s" % resp))
		except SessionClosed: return
	await session.drain(DRAIN_TIMEOUT)

async def converse(session, foreground, fmt):
	"""Run a foreground loop alongside the frame printer until either one stops"""
	fg = asyncio.create_task(foreground)
	printer = asyncio.create_task(print_frames(session, fmt))
	try:
		await asyncio.wait([fg, printer], return_when=asyncio.FIRST_COMPLETED)
		if session.state in ("closed", "errored"):
			# The connection is over, so the printer's queue is finite; flush it.
			await asyncio.wait([printer])
	finally:
		fg.cancel(); printer.cancel()
	await asyncio.gather(fg, printer, return_exceptions=True)
	# The foreground's error, if any, takes precedence over the printer's.
	errors = [task.exception() for task in (fg, printer) if not task.cancelled() and task.exception()]
	if errors: raise errors[0]
	if session.state == "closed": print("Connection closed by server", file=sys.stderr)

async def amain(config, connect=websockets.connect, stdin=None):
	async with Session(config.url, config.origin, connect) as session:
		if config.stdin:
			await converse(session, stream_lines(session, stdin or sys.stdin), "Received message: %s")
			return
		prompt = PromptSession(history=open_history(config.history_file))
		with patch_stdout():
			await converse(session, interact(session, functools.partial(prompt.prompt_async, PROMPT)), "< %s")

class UsageParser(argparse.ArgumentParser):
	def error(self, message):
		# Usage errors exit 1, not argparse's usual 2
		self.print_help(sys.stderr)
		self.exit(1, "%s: error: %s\n" % (self.prog, message))

def parse_args(argv=None):
	parser = UsageParser(prog="ws", description="websocket tool")
	parser.add_argument("url", help="ws:// or wss:// URL to connect to")
	parser.add_argument("-o", "--origin", default="", help="websocket origin (default: the URL as http/https)")
	parser.add_argument("-i", "--stdin", action="store_true", help="read input from stdin not interactive")
	parser.add_argument("-v", "--version", action="version", version="ws v" + VERSION, help="print version")
	return parser.parse_args(argv)

def main(argv=None):
	level = os.environ.get("WS_LOGLEVEL", "WARNING").upper()
	logging.basicConfig(level=getattr(logging, level, logging.WARNING), format="%(levelname)s: %(message)s")
	args = parse_args(argv)
	try:
		dest = parse_destination(args.url)
	except ParseError as e:
		print(e, file=sys.stderr)
		return 1
	config = Config(
		url=dest.geturl(),
		origin=args.origin or derive_origin(dest),
		stdin=args.stdin,
		history_file=history_path(),
	)
	try:
		asyncio.run(amain(config))
	except ConnectionFailed as e:
		print("** ERROR **\n%s" % e, file=sys.stderr)
		return 1
	except KeyboardInterrupt:
		pass
	return 0

if __name__ == "__main__":
	sys.exit(main())
