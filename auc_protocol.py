'''Wire format shared by the auctioneer and the bidders.

Every message is one UTF-8 line, fields separated by "|":

    JOIN|<name>                              bidder -> auctioneer
    BID|<name>|<amount>                      both directions
    FINAL_CONFIRM|<name>                     bidder -> auctioneer
    START|<item>                             auctioneer -> all
    FINAL_REQUEST|<name>|<amount>            auctioneer -> all
    BIDMASTER|FINAL_CONFIRMED|<name>|<amount> auctioneer -> all
    BIDMASTER|INFO|<free text>               auctioneer -> all
    END                                      auctioneer -> all
'''
from collections import namedtuple

HOST = '127.0.0.1'
PORT = 5000

DELIMITER = '|'
ENCODING = 'utf-8'

JOIN = 'JOIN'
START = 'START'
BID = 'BID'
FINAL_REQUEST = 'FINAL_REQUEST'
FINAL_CONFIRM = 'FINAL_CONFIRM'
END = 'END'
FINAL_CONFIRMED = 'BIDMASTER|FINAL_CONFIRMED'
INFO = 'BIDMASTER|INFO'
UNKNOWN = 'UNKNOWN'

Message = namedtuple('Message', ['kind', 'fields'])

# kind -> (number of fields, last field takes the rest of the line)
CLIENT_MESSAGES = {
    JOIN: (1, False),
    BID: (2, False),
    FINAL_CONFIRM: (1, False),
}

SERVER_MESSAGES = {
    START: (1, False),
    BID: (2, False),
    FINAL_REQUEST: (2, False),
    FINAL_CONFIRMED: (2, False),
    INFO: (1, True),
    END: (0, False),
}


class ProtocolError(ValueError):
    '''Raised for a line that does not fit the message grammar.'''


def format_line(kind, *fields):
    """
    Builds one protocol line (without the trailing newline).

    Parameters:
    - kind (str): message kind, e.g. BID or FINAL_CONFIRMED
    - fields: field values, converted with str()

    Raises ProtocolError if a field would break the framing.
    """
    values = [str(field) for field in fields]
    for value in values:
        if DELIMITER in value or '\n' in value or '\r' in value:
            raise ProtocolError(f"Field {value!r} may not contain '|' or line breaks")
    return DELIMITER.join([kind] + values)


def _match_kind(line, grammar):
    # longest kind first so "BIDMASTER|INFO" is not shadowed by a shorter prefix
    for kind in sorted(grammar, key=len, reverse=True):
        if line == kind or line.startswith(kind + DELIMITER):
            return kind
    return None


def parse_line(line, grammar):
    """
    Splits a received line into a Message using the given grammar.

    Lines whose kind is not in the grammar come back as Message(UNKNOWN, (line,)).
    A known kind with the wrong number of fields raises ProtocolError.
    """
    line = line.rstrip('\r\n')
    kind = _match_kind(line, grammar)
    if kind is None:
        return Message(UNKNOWN, (line,))

    count, free_text = grammar[kind]
    rest = line[len(kind) + 1:]
    if count == 0:
        if line != kind:
            raise ProtocolError(f"{kind} takes no fields: {line!r}")
        return Message(kind, ())
    if line == kind:
        raise ProtocolError(f"{kind} expects {count} field(s), got none")

    if free_text:
        fields = rest.split(DELIMITER, count - 1)
    else:
        fields = rest.split(DELIMITER)
    if len(fields) != count:
        raise ProtocolError(f"{kind} expects {count} field(s), got {len(fields)}: {line!r}")
    return Message(kind, tuple(fields))


def parse_client_line(line):
    '''Parses a line received by the auctioneer.'''
    return parse_line(line, CLIENT_MESSAGES)


def parse_server_line(line):
    '''Parses a line received by a bidder.'''
    return parse_line(line, SERVER_MESSAGES)
