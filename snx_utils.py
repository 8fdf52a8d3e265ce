import logging

logger = logging.getLogger(__name__)

PAGE_WIDTH_N6 = 1404          # Default pixels size on A6x2 / A5x (Nomad)
PAGE_HEIGHT_N6 = 1872
PAGE_WIDTH_N5 = 1920          # N5 series like Manta
PAGE_HEIGHT_N5 = 2560
ADDRESS_SIZE = 4              # Width of the footer pointer at the end of the file
LENGTH_FIELD_SIZE = 4         # Width of the length prefix of every block
SIGNATURE_LENGTH = 24
SIGNATURE_PREFIX = 'noteSN_FILE_VER_'
DEFAULT_HEADER_ADDRESS = 24
DEFAULT_LAYERS = ['MAINLAYER', 'LAYER1', 'LAYER2', 'LAYER3', 'BGLAYER']
PAGE_SORT_NUMERIC = False     # Footer PAGE keys are sorted as strings unless set
TEXT_ENCODING = 'utf-8'


class NoteParseError(Exception):
    """ Base class of every fatal decoding error """


class SignatureMismatchError(NoteParseError):
    """ The first bytes of the file are not a note signature """


class MalformedGrammarError(NoteParseError):
    """ An embedded grammar matched partially and cannot be read """


class OutOfBoundsError(NoteParseError):
    """ A resolved offset or length points outside the buffer """

    def __init__(self, position, num_bytes, size):
        super().__init__(
            f'Cannot read {num_bytes} byte(s) at position {position}: buffer holds {size} byte(s)')
        self.position = position
        self.num_bytes = num_bytes
        self.size = size


def series_bounds(series):
    """ Returns page bounds based on device series """
    if series in ['N5']:
        return [PAGE_WIDTH_N5, PAGE_HEIGHT_N5]
    else:
        return [PAGE_WIDTH_N6, PAGE_HEIGHT_N6]


def read_endian_int_at_position(data, position, num_bytes=4, endian='little'):
    """ Returns the unsigned integer equivalent of 'num_bytes' read
        from 'data' at 'position' """
    if endian not in ['little', 'big']:
        raise ValueError("Endian must be 'little' or 'big'")

    if position < 0 or position + num_bytes > len(data):
        raise OutOfBoundsError(position, num_bytes, len(data))

    byte_sequence = data[position:position + num_bytes]
    return int.from_bytes(byte_sequence, byteorder=endian)


def get_content_at_address(buffer, address, byte_length=LENGTH_FIELD_SIZE):
    """ Returns the block stored at 'address': a length field of 'byte_length'
        bytes followed by that many bytes of content.

        An address of 0 means there is no block and None is returned.
        The content is a memoryview over 'buffer', nothing is copied. """
    if address == 0:
        return None
    view = buffer if isinstance(buffer, memoryview) else memoryview(buffer)
    block_length = read_endian_int_at_position(view, address, num_bytes=byte_length)
    begin_read = address + byte_length
    end_read = begin_read + block_length
    if end_read > len(view):
        raise OutOfBoundsError(begin_read, block_length, len(view))
    return view[begin_read:end_read]


def decode_text(content):
    """ Decodes a block into text, replacing invalid sequences """
    if content is None:
        return ''
    return bytes(content).decode(TEXT_ENCODING, errors='replace')


def to_address(value, default=0):
    """ Converts an address field into an integer.
        A missing or non-numeric value is treated as 'default' """
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning('Ignoring non-numeric address %r', value)
        return default
