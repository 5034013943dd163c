import logging
import socket
import threading

from auc_protocol import ENCODING

logger = logging.getLogger(__name__)


class Connection:
    def __init__(self, sock, addr=None):
        """
        Wraps a connected TCP socket with newline framed UTF-8 text I/O.

        Parameters:
        - sock: connected socket object
        - addr: remote address as returned by accept(), looked up if omitted
        """
        self.sock = sock
        if addr is None:
            try:
                addr = sock.getpeername()
            except OSError:
                addr = None
        self.addr = addr
        self.reader = sock.makefile('r', encoding=ENCODING, errors='replace', newline='\n')
        self.send_lock = threading.Lock()   # one writer at a time so lines never interleave
        self.close_lock = threading.Lock()
        self.closed = False
        self.reading = False

    @classmethod
    def connect(cls, host, port):
        '''Opens an outbound connection. Connection errors propagate as OSError.'''
        sock = socket.create_connection((host, port))
        return cls(sock)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def __repr__(self):
        return f"<Connection {self.peer}{' closed' if self.closed else ''}>"

    @property
    def peer(self):
        if not self.addr:
            return '?'
        return f"{self.addr[0]}:{self.addr[1]}"

    def send_line(self, line):
        """
        Sends one line, appending the newline terminator.

        Raises OSError if the connection is closed or the peer went away.
        """
        data = (line + '\n').encode(ENCODING)
        with self.send_lock:
            if self.closed:
                raise OSError(f"Connection to {self.peer} is closed")
            self.sock.sendall(data)

    def lines(self):
        """
        Yields received lines (without terminator) until end of stream.

        A read error is treated like end of stream. The reader is released
        when the generator finishes, so it must be consumed by one thread only.
        """
        self.reading = True
        try:
            for raw in self.reader:
                yield raw.rstrip('\r\n')
        except (OSError, ValueError) as e:
            # ValueError: reader used after the connection was torn down
            logger.debug("Read from %s ended: %s", self.peer, e)
        finally:
            try:
                self.reader.close()
            except OSError as e:
                logger.debug("Closing reader for %s failed: %s", self.peer, e)

    def close(self):
        '''Shuts the socket down and closes it. Safe to call repeatedly and from any thread.'''
        with self.close_lock:
            if self.closed:
                return False
            self.closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)    # wakes up a thread blocked in readline()
        except OSError as e:
            logger.debug("Shutdown of %s failed: %s", self.peer, e)
        if not self.reading:
            self.reader.close()     # nobody will drain it, release the file descriptor now
        self.sock.close()
        return True
