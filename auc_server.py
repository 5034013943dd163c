import argparse
import logging
import socket
import threading
from dataclasses import dataclass, replace
from typing import Optional

from auc_connection import Connection
from auc_protocol import (BID, END, FINAL_CONFIRM, FINAL_CONFIRMED, FINAL_REQUEST, HOST, INFO, JOIN, PORT,
                          START, ProtocolError, format_line, parse_client_line)

logger = logging.getLogger(__name__)


@dataclass
class AuctionState:
    item: Optional[str] = None
    last_bidder: Optional[str] = None
    last_amount: Optional[str] = None     # raw text as sent by the bidder, never parsed
    pending_final: bool = False
    running: bool = False       # listener is accepting connections

    def reset(self):
        self.item = None
        self.last_bidder = None
        self.last_amount = None
        self.pending_final = False


class Listener:
    def __init__(self, host, port, on_accept, log=print):
        """
        Accepts inbound connections on its own thread.

        Parameters:
        - host (str): address to bind
        - port (int): port to bind, 0 picks a free one
        - on_accept: callable(sock, addr) invoked for every accepted connection
        - log: callable receiving human readable log lines
        """
        self.host = host
        self.port = port
        self.on_accept = on_accept
        self.log = log
        self.server_socket = None
        self.accept_thread = None
        self.stopping = threading.Event()
        self.stop_lock = threading.Lock()

    @property
    def address(self):
        if self.server_socket is None:
            return None
        return self.server_socket.getsockname()[:2]

    def start(self):
        '''Binds and starts the accept thread. A bind failure is raised to the caller.'''
        server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            server_socket.bind((self.host, self.port))
            server_socket.listen()
        except OSError:
            server_socket.close()
            raise
        self.server_socket = server_socket
        self.stopping.clear()
        self.accept_thread = threading.Thread(target=self.accept_loop, name='auction-listener', daemon=True)
        self.accept_thread.start()

    def accept_loop(self):
        while True:
            try:
                conn, addr = self.server_socket.accept()
            except OSError as e:
                if not self.stopping.is_set():
                    self.log(f"Server accept error: {e}")
                return
            self.on_accept(conn, addr)

    def stop(self):
        '''Closes the listening socket, which ends the accept loop. Idempotent.'''
        with self.stop_lock:
            if self.server_socket is None or self.stopping.is_set():
                return
            self.stopping.set()
        try:
            self.server_socket.shutdown(socket.SHUT_RDWR)   # unblocks accept() on Linux
        except OSError as e:
            logger.debug("Listener shutdown: %s", e)
        self.server_socket.close()
        if self.accept_thread is not None and self.accept_thread is not threading.current_thread():
            self.accept_thread.join(timeout=5)


class ClientSession:
    def __init__(self, connection, coordinator, log=print):
        """
        Auctioneer side of one connected bidder.

        Parameters:
        - connection: Connection to the bidder
        - coordinator: AuctionCoordinator receiving parsed lines
        - log: callable receiving human readable log lines
        """
        self.connection = connection
        self.coordinator = coordinator
        self.log = log
        self.name = None    # declared on JOIN
        self.alive = True
        self.close_lock = threading.Lock()
        self.read_thread = None

    def __repr__(self):
        return f"<ClientSession {self.name!r} {self.connection.peer}>"

    @property
    def label(self):
        '''Declared name, or the remote address before JOIN.'''
        return self.name if self.name is not None else self.connection.peer

    def start(self):
        self.read_thread = threading.Thread(target=self.read_loop, name=f"session-{self.connection.peer}",
                                            daemon=True)
        self.read_thread.start()

    def read_loop(self):
        try:
            with self.connection:
                for line in self.connection.lines():
                    self.coordinator.on_client_message(self, line)
        finally:
            self.close()

    def send(self, line):
        '''Best effort send; a failure closes the session.'''
        try:
            self.connection.send_line(line)
            return True
        except OSError as e:
            if self.alive:
                self.log(f"Failed to send to client {self.label}: {e}")
            self.close()
            return False

    def close(self):
        with self.close_lock:
            if not self.alive:
                return
            self.alive = False
        self.connection.close()
        self.coordinator.unregister_session(self)
        self.log(f"Client disconnected: {self.label}")


class AuctionCoordinator:
    def __init__(self, host=HOST, port=PORT, log=print):
        """
        Owns the auction state and the roster of connected bidders.

        State changes and the broadcasts they cause run under state_lock, so every
        bidder sees messages in the order the operations happened. The roster has
        its own lock which is only held to modify it or take a snapshot.

        Parameters:
        - host (str): address the listener binds
        - port (int): port the listener binds
        - log: callable receiving human readable log lines
        """
        self.host = host
        self.port = port
        self.log = log
        self.state = AuctionState()
        self.state_lock = threading.RLock()
        self.sessions = []
        self.roster_lock = threading.Lock()
        self.listener = None

    @property
    def address(self):
        return self.listener.address if self.listener else None

    def snapshot(self):
        '''Returns a copy of the auction state.'''
        with self.state_lock:
            return replace(self.state)

    def roster(self):
        with self.roster_lock:
            return list(self.sessions)

    # Roster -----------------------------------------------------------------

    def register_session(self, session):
        with self.roster_lock:
            if session not in self.sessions:
                self.sessions.append(session)

    def unregister_session(self, session):
        with self.roster_lock:
            if session in self.sessions:
                self.sessions.remove(session)
                return True
        return False

    def broadcast(self, line):
        """
        Sends a line to every registered session.

        Iterates over a snapshot so sessions dropping out mid-broadcast do not
        affect delivery to the others, and no send happens under the roster lock.
        """
        for session in self.roster():
            session.send(line)

    def accept_connection(self, sock, addr):
        connection = Connection(sock, addr)
        session = ClientSession(connection, self, self.log)
        self.register_session(session)
        self.log(f"Client connected: {connection.peer}")
        session.start()

    # Auction operations -----------------------------------------------------

    def start_auction(self, item):
        """
        Starts a round for the item and opens the listener if needed.

        Raises OSError if the listening socket cannot be bound; the state is
        left untouched in that case, as it is for an item that cannot be framed
        (ProtocolError).
        """
        start_line = format_line(START, item)
        with self.state_lock:
            if self.state.running:
                self.log(f"Server already running on port {self.address[1]}")
            else:
                listener = Listener(self.host, self.port, self.accept_connection, self.log)
                try:
                    listener.start()
                except OSError as e:
                    self.log(f"Failed to open server socket on port {self.port}: {e}")
                    raise
                self.listener = listener
                self.state.running = True
                self.log(f"Server listening on port {self.address[1]}")

            self.state.reset()
            self.state.item = item
            self.log(f"Auction started for item: {item}")
            self.broadcast(start_line)

    def end_auction(self):
        with self.state_lock:
            self.log("Ending auction...")
            self.broadcast(END)
            if self.listener is not None:
                self.listener.stop()
                self.listener = None
            for session in self.roster():
                session.close()
            self.state.reset()
            self.state.running = False
            self.log("Auction ended. All clients disconnected.")

    def record_bid(self, session, amount):
        with self.state_lock:
            name = session.name or ''
            self.state.last_bidder = name
            self.state.last_amount = amount
            self.log(f"Bid received: {name} -> ${amount}")
            self.broadcast(format_line(BID, name, amount))

    def request_final(self):
        with self.state_lock:
            if self.state.last_bidder is None:
                self.log("No bids have been placed yet; no last bidder to confirm final bid.")
                return False
            if self.state.pending_final:
                self.log(f"Already waiting for final confirmation from {self.state.last_bidder}")
                return False
            self.state.pending_final = True
            self.log(f"Requesting final confirmation from last bidder: {self.state.last_bidder} "
                     f"(amount: ${self.state.last_amount})")
            self.broadcast(format_line(FINAL_REQUEST, self.state.last_bidder, self.state.last_amount))
            return True

    def confirm_final(self, session, name):
        with self.state_lock:
            if not self.state.pending_final:
                self.log(f"Received FINAL_CONFIRM from {name} but no final was requested.")
                return False
            if name != self.state.last_bidder:
                self.log(f"FINAL_CONFIRM received from {name} but last bidder is "
                         f"{self.state.last_bidder}. Ignoring.")
                return False
            if session.name != name:
                # only the connection that joined under the bidder's name may confirm
                self.log(f"FINAL_CONFIRM for {name} sent by client joined as {session.name}. Ignoring.")
                return False
            self.log(f"Final bid confirmed by {name} for ${self.state.last_amount}")
            self.broadcast(format_line(FINAL_CONFIRMED, name, self.state.last_amount))
            self.state.pending_final = False
            return True

    def join(self, session, name):
        with self.state_lock:
            if session.name is not None:
                self.log(f"Client {session.name} already joined; ignoring JOIN as {name}")
                return False
            session.name = name
            self.log(f"Client joined as: {name}")
            self.broadcast(format_line(INFO, f"{name} joined."))
            return True

    def on_client_message(self, session, line):
        '''Parses one line from a session and routes it. Bad lines are logged and dropped.'''
        self.log(f"Received from client: {line}")
        try:
            message = parse_client_line(line)
        except ProtocolError as e:
            self.log(f"Malformed message from client: {e}")
            return

        with self.state_lock:
            if not session.alive:
                return  # closed by end_auction while this line was waiting for the lock
            if message.kind == JOIN:
                self.join(session, message.fields[0])
            elif message.kind == BID:
                name, amount = message.fields
                if session.name is not None and name != session.name:
                    self.log(f"BID names {name} but client joined as {session.name}; "
                             f"recording for {session.name}")
                self.record_bid(session, amount)
            elif message.kind == FINAL_CONFIRM:
                self.confirm_final(session, message.fields[0])
            else:
                self.log(f"Unknown message from client: {line}")


COMMANDS = "Commands: start <item> | final | end | status | quit"


def run_shell(coordinator):
    '''Reads auctioneer commands from stdin until quit or EOF.'''
    print(COMMANDS)
    while True:
        try:
            command = input("> ").strip()
        except EOFError:
            command = 'quit'
        if not command:
            continue

        action, _, argument = command.partition(' ')
        action = action.lower()
        argument = argument.strip()

        if action == 'start':
            if not argument:
                print("Please enter an item before starting the auction.")
                continue
            try:
                coordinator.start_auction(argument)
            except ProtocolError as e:
                print(f"Error: {e}")
            except OSError:
                continue    # already logged by the coordinator
        elif action == 'final':
            coordinator.request_final()
        elif action == 'end':
            coordinator.end_auction()
        elif action == 'status':
            state = coordinator.snapshot()
            print(f"item={state.item} last_bidder={state.last_bidder} last_amount={state.last_amount} "
                  f"pending_final={state.pending_final} running={state.running} "
                  f"bidders={[session.name for session in coordinator.roster()]}")
        elif action == 'quit':
            if coordinator.snapshot().running:
                coordinator.end_auction()
            break
        else:
            print(COMMANDS)


def main(argv=None):
    '''Parses the host and port, then runs the auctioneer shell.'''
    parser = argparse.ArgumentParser(description="Run the auctioneer (bid master)")
    parser.add_argument('--host', type=str, default=HOST, help="The host IP address to listen on")
    parser.add_argument('--port', type=int, default=PORT, help="The host port")
    parser.add_argument('-v', '--verbose', action='store_true', help="Print socket level diagnostics")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s %(name)s %(levelname)s %(message)s")

    coordinator = AuctionCoordinator(args.host, args.port)
    try:
        run_shell(coordinator)
    except KeyboardInterrupt:
        coordinator.end_auction()


if __name__ == "__main__":
    main()
