import argparse
import logging
import threading

from auc_connection import Connection
from auc_protocol import (BID, END, FINAL_CONFIRM, FINAL_CONFIRMED, FINAL_REQUEST, HOST, INFO, JOIN, PORT,
                          START, UNKNOWN, ProtocolError, format_line, parse_server_line)

logger = logging.getLogger(__name__)


def _ignore(*args):
    pass


class BidderAgent:
    def __init__(self, log=print, on_final_available=None, on_message=None):
        """
        Bidder side of the auction: joins the auctioneer, sends bids and
        final confirmations, and surfaces everything the auctioneer broadcasts.

        Parameters:
        - log: callable receiving human readable log lines
        - on_final_available: callable(bool), True while a final request is pending locally
        - on_message: callable(Message) invoked for every parsed server message
        """
        self.log = log
        self.on_final_available = on_final_available or _ignore
        self.on_message = on_message or _ignore
        self.lock = threading.RLock()
        self.connection = None
        self.read_thread = None
        self.name = None
        self.item = None
        self.final_request = None   # (name, amount) of the pending final request

    @property
    def connected(self):
        return self.connection is not None

    @property
    def final_requested(self):
        return self.final_request is not None

    def join(self, host, port, name):
        """
        Connects to the auctioneer and sends JOIN.

        Returns False if the name is empty or the agent is already connected.
        A connection failure is logged and raised as OSError.
        """
        name = name.strip()
        if not name:
            self.log("Please enter your name before joining.")
            return False
        with self.lock:
            if self.connected:
                self.log("Already connected to server.")
                return False
            join_line = format_line(JOIN, name)
            try:
                connection = Connection.connect(host, port)
            except OSError as e:
                self.log(f"Failed to connect to server: {e}")
                raise
            self.connection = connection
            self.name = name
            self.log(f"You joined as: {name}")
            self.read_thread = threading.Thread(target=self.read_loop, args=(connection,),
                                                name=f"bidder-{name}", daemon=True)
            self.read_thread.start()
        if self.send(join_line):
            self.log(f"Sent {join_line} to server.")
            return True
        return False

    def read_loop(self, connection):
        try:
            with connection:
                for line in connection.lines():
                    self.handle_server_line(line)
        finally:
            self.disconnect(connection)

    def handle_server_line(self, line):
        self.log(f"Server: {line}")
        try:
            message = parse_server_line(line)
        except ProtocolError as e:
            self.log(f"Malformed message from server: {e}")
            return

        if message.kind == START:
            with self.lock:
                self.item = message.fields[0]
                self.final_request = None
            self.log(f"Auction started for item: {self.item}")
        elif message.kind == BID:
            name, amount = message.fields
            self.log(f"{name} bid ${amount}")
        elif message.kind == FINAL_REQUEST:
            with self.lock:
                self.final_request = message.fields
            self.log(f"Final confirmation requested by master: {message.fields[0]} (${message.fields[1]}). "
                     f"Confirm if you are the last bidder.")
            self.on_final_available(True)
        elif message.kind == FINAL_CONFIRMED:
            with self.lock:
                self.final_request = None
            self.log(f"Final confirmed: {message.fields[0]} for ${message.fields[1]}")
            self.on_final_available(False)
        elif message.kind == INFO:
            self.log(f"Info: {message.fields[0]}")
        elif message.kind == END:
            self.log("Server ended the auction.")
            self.disconnect()
        elif message.kind == UNKNOWN:
            logger.debug("Unhandled server message %r", line)
        self.on_message(message)

    def send(self, line):
        with self.lock:
            connection = self.connection
        if connection is None:
            return False
        try:
            connection.send_line(line)
            return True
        except OSError as e:
            self.log(f"Failed to send to server: {e}")
            self.disconnect(connection)
            return False

    def bid(self, amount):
        '''Sends BID with the amount as typed; the amount is never interpreted.'''
        amount = str(amount).strip()
        if not amount:
            self.log("Please enter a bid amount.")
            return False
        with self.lock:
            if not self.connected:
                self.log("You are not connected to server. Join the auction first.")
                return False
            if not self.name:
                self.log("Name is empty. Please enter your name.")
                return False
            name = self.name
        try:
            line = format_line(BID, name, amount)
        except ProtocolError as e:
            self.log(f"Invalid bid: {e}")
            return False
        if self.send(line):
            self.log(f"Your bid: ${amount} (sent)")
            return True
        return False

    def confirm_final(self):
        """
        Answers a pending final request with FINAL_CONFIRM.

        The local pending flag is cleared as soon as the confirmation is sent,
        without waiting for BIDMASTER|FINAL_CONFIRMED.
        """
        with self.lock:
            if not self.final_requested:
                self.log("No final request active.")
                return False
            if not self.connected:
                self.log("Not connected to server.")
                return False
            name = self.name
            # TODO: clear only on BIDMASTER|FINAL_CONFIRMED; a rejected confirmation leaves no way to retry
            self.final_request = None
        self.on_final_available(False)
        if self.send(format_line(FINAL_CONFIRM, name)):
            self.log("You confirmed the final bid (sent).")
            return True
        return False

    def disconnect(self, connection=None):
        """
        Closes the connection and clears all local session state. Safe to call
        repeatedly and from any thread.

        Parameters:
        - connection: only disconnect if this is still the current connection
        """
        with self.lock:
            current = self.connection
            if current is None or (connection is not None and connection is not current):
                return False
            self.connection = None
            self.name = None
            self.item = None
            self.final_request = None
        current.close()
        self.on_final_available(False)
        self.log("Disconnected from server.")
        return True


COMMANDS = "Commands: bid <amount> | confirm | quit"


def run_shell(agent):
    '''Reads bidder commands from stdin until quit, EOF or the auction ends.'''
    print(COMMANDS)
    while agent.connected:
        try:
            command = input().strip()
        except EOFError:
            break
        if not command:
            continue

        action, _, argument = command.partition(' ')
        action = action.lower()
        if action == 'bid':
            agent.bid(argument)
        elif action == 'confirm':
            agent.confirm_final()
        elif action == 'quit':
            break
        else:
            print(COMMANDS)
    agent.disconnect()


def main(argv=None):
    '''Parses the CLI args, joins the auction and runs the bidder shell.'''
    parser = argparse.ArgumentParser(description="Join an auction as a bidder")
    parser.add_argument('name', type=str, help="Your bidder name")
    parser.add_argument('--host', type=str, default=HOST, help="The server IP address")
    parser.add_argument('--port', type=int, default=PORT, help="The server port")
    parser.add_argument('-v', '--verbose', action='store_true', help="Print socket level diagnostics")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s %(name)s %(levelname)s %(message)s")

    def final_available(available):
        if available:
            print("Type 'confirm' to confirm your final bid.")

    agent = BidderAgent(on_final_available=final_available)
    try:
        if not agent.join(args.host, args.port, args.name):
            return 1
    except (OSError, ProtocolError):
        return 1
    try:
        run_shell(agent)
    except KeyboardInterrupt:
        agent.disconnect()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
