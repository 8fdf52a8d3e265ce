import snx_utils as snx
import snx_grammar as sng
import argparse
import base64
import json
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

VERSION = '1.0.0'

logger = logging.getLogger(__name__)

SIGNATURE_PATTERN = re.compile(r'^noteSN_FILE_VER_[0-9]{8}')
EMPTY_RECT = ('0', '0', '0', '0')
FOOTER_DEFAULTS = {
    'FILE': {'FEATURE': '24'},
    'COVER': {'0': '0'},
    'KEYWORD': {},
    'TITLE': {},
    'STYLE': {},
    'PAGE': {}}
HEADER_DEFAULTS = {
    'MODULE_LABEL': '0',
    'FILE_TYPE': '0',
    'APPLY_EQUIPMENT': '0',
    'FINAL_OPERATION_PAGE': '0',
    'FINAL_OPERATION_LAYER': '0',
    'ORIGINAL_STYLE': '0',
    'ORIGINAL_STYLEMD5': '0',
    'DEVICE_DPI': '0',
    'SOFT_DPI': '0',
    'FILE_PARSE_TYPE': '0',
    'RATTA_ETMD': '0',
    'APP_VERSION': '0'}

# Field tables: (tag in the block, attribute, default)
PAGE_FIELDS = (
    ('PAGESTYLE', 'style', '0'),
    ('PAGESTYLEMD5', 'style_md5', '0'),
    ('LAYERSWITCH', 'layer_switch', '0'),
    ('TOTALPATH', 'total_path', '0'),
    ('THUMBNAILTYPE', 'thumbnail_type', '0'),
    ('RECOGNSTATUS', 'recogn_status', '0'),
    ('RECOGNTEXT', 'recogn_text', '0'),
    ('ORIENTATION', 'orientation', '1000'))
LAYER_FIELDS = (
    ('LAYERTYPE', 'layer_type', 'NOTE'),
    ('LAYERPROTOCOL', 'protocol', 'RATTA_RLE'),
    ('LAYERNAME', 'name', 'MAINLAYER'),
    ('LAYERPATH', 'path', '0'),
    ('LAYERBITMAP', 'bitmap', '0'),
    ('LAYERVECTORGRAPH', 'vector_graph', '0'),
    ('LAYERRECOGN', 'recogn', '0'))
KEYWORD_FIELDS = (
    ('KEYWORDSEQNO', 'seq_no', '0'),
    ('KEYWORDPAGE', 'page', '1'),
    ('KEYWORDRECT', 'rect', EMPTY_RECT),
    ('KEYWORDRECTORI', 'rect_ori', EMPTY_RECT),
    ('KEYWORDSITE', 'site', '0'),
    ('KEYWORDLEN', 'length', '0'),
    ('KEYWORD', 'keyword', ''))
TITLE_FIELDS = (
    ('TITLESEQNO', 'seq_no', '0'),
    ('TITLELEVEL', 'level', '1'),
    ('TITLERECT', 'rect', EMPTY_RECT),
    ('TITLERECTORI', 'rect_ori', EMPTY_RECT),
    ('TITLEBITMAP', 'bitmap', '0'),
    ('TITLEPROTOCOL', 'protocol', 'RATTA_RLE'),
    ('TITLESTYLE', 'style', '1000254'))


class LayerName(Enum):
    MAINLAYER = 'MAINLAYER'
    LAYER1 = 'LAYER1'
    LAYER2 = 'LAYER2'
    LAYER3 = 'LAYER3'
    BGLAYER = 'BGLAYER'

    @property
    def layer_id(self):
        """ Id of the matching LAYERINFO record """
        return LAYER_IDS[self]


LAYER_IDS = {
    LayerName.MAINLAYER: 0,
    LayerName.LAYER1: 1,
    LayerName.LAYER2: 2,
    LayerName.LAYER3: 3,
    LayerName.BGLAYER: -1}


@dataclass(frozen=True)
class Layer:
    address: str = '0'
    layer_type: str = 'NOTE'
    protocol: str = 'RATTA_RLE'
    name: str = 'MAINLAYER'
    path: str = '0'
    bitmap: str = '0'
    vector_graph: str = '0'
    recogn: str = '0'
    metadata: Mapping = field(default_factory=lambda: MappingProxyType({}))
    bitmap_buffer: Optional[memoryview] = None


@dataclass(frozen=True)
class Page:
    address: str
    layers: Mapping[LayerName, Layer]
    layer_info: Tuple[sng.LayerInfo, ...] = ()
    layer_seq: Tuple[str, ...] = ()
    style: str = '0'
    style_md5: str = '0'
    layer_switch: str = '0'
    total_path: str = '0'
    thumbnail_type: str = '0'
    recogn_status: str = '0'
    recogn_text: str = '0'
    orientation: str = '1000'
    metadata: Mapping = field(default_factory=lambda: MappingProxyType({}))
    total_path_buffer: Optional[memoryview] = None
    recogn_text_buffer: Optional[memoryview] = None

    def layer(self, name):
        """ Returns the layer slot 'name' (a LayerName or its string value) """
        return self.layers[LayerName(name)]

    def layer_info_for(self, name):
        """ Returns the LAYERINFO record of layer slot 'name', if declared """
        layer_id = LayerName(name).layer_id
        for a_layer_info in self.layer_info:
            if a_layer_info.layer_id == layer_id:
                return a_layer_info
        return None

    def painted_layers(self):
        """ Layers in LAYERSEQ order, unknown names skipped """
        return [
            self.layers[LayerName(a_name)] for a_name in self.layer_seq
            if a_name in snx.DEFAULT_LAYERS]


@dataclass(frozen=True)
class Cover:
    address: str
    bitmap_buffer: Optional[memoryview] = None


@dataclass(frozen=True)
class Keyword:
    address: str
    seq_no: str = '0'
    page: str = '1'
    rect: Tuple[str, ...] = EMPTY_RECT
    rect_ori: Tuple[str, ...] = EMPTY_RECT
    site: str = '0'
    length: str = '0'
    keyword: str = ''
    metadata: Mapping = field(default_factory=lambda: MappingProxyType({}))
    bitmap_buffer: Optional[memoryview] = None


@dataclass(frozen=True)
class Title:
    address: str
    seq_no: str = '0'
    level: str = '1'
    rect: Tuple[str, ...] = EMPTY_RECT
    rect_ori: Tuple[str, ...] = EMPTY_RECT
    bitmap: str = '0'
    protocol: str = 'RATTA_RLE'
    style: str = '1000254'
    metadata: Mapping = field(default_factory=lambda: MappingProxyType({}))
    bitmap_buffer: Optional[memoryview] = None


@dataclass(frozen=True)
class Notebook:
    """ A decoded note file. Built once by parse_note, read-only afterwards """
    signature: str
    header: Mapping[str, str]
    footer: Mapping[str, Mapping]
    pages: Tuple[Page, ...]
    cover: Optional[Cover]
    keywords: Mapping[str, Tuple[Keyword, ...]]
    titles: Mapping[str, Tuple[Title, ...]]
    page_width: int = snx.PAGE_WIDTH_N6
    page_height: int = snx.PAGE_HEIGHT_N6

    def to_dict(self):
        """ JSON friendly view of the metadata. Buffers are given by size """
        return {
            '__signature__': self.signature,
            '__header__': dict(self.header),
            '__footer__': {a_group: dict(a_value) for a_group, a_value in self.footer.items()},
            '__pages__': [_page_to_dict(a_page) for a_page in self.pages],
            '__cover__': None if self.cover is None else {
                'address': self.cover.address,
                'bitmap_size': _buffer_size(self.cover.bitmap_buffer)},
            '__keywords__': {
                a_category: [_entry_to_dict(a_keyword) for a_keyword in a_list]
                for a_category, a_list in self.keywords.items()},
            '__titles__': {
                a_category: [_entry_to_dict(a_title) for a_title in a_list]
                for a_category, a_list in self.titles.items()},
            'page_size': [self.page_width, self.page_height]}


def _buffer_size(a_buffer):
    return None if a_buffer is None else len(a_buffer)


def _page_to_dict(page):
    return {
        **page.metadata,
        'LAYERINFO': [a_layer_info.to_dict() for a_layer_info in page.layer_info],
        'LAYERSEQ': list(page.layer_seq),
        '__layers__': {
            a_name.value: {**a_layer.metadata, 'bitmap_size': _buffer_size(a_layer.bitmap_buffer)}
            for a_name, a_layer in page.layers.items()},
        'totalpath_size': _buffer_size(page.total_path_buffer),
        'recogntext_size': _buffer_size(page.recogn_text_buffer)}


def _entry_to_dict(entry):
    return {**entry.metadata, 'bitmap_size': _buffer_size(entry.bitmap_buffer)}


def _scalar(data, key, default):
    """ Value of 'key', the first one if the key was repeated """
    value = data.get(key, default)
    if isinstance(value, (list, tuple)):
        logger.warning('Key %s occurs %d times, keeping the first value', key, len(value))
        value = value[0]
    return value


def _first(value):
    if isinstance(value, (list, tuple)):
        logger.warning('Several addresses %s where one is expected, keeping the first', value)
        value = value[0]
    return value


def _frozen(data):
    """ Copy of 'data' with repeated-key lists turned into tuples """
    return {key: tuple(value) if isinstance(value, list) else value for key, value in data.items()}


def _address(value):
    return snx.to_address(_first(value))


def _fields(data, table):
    """ Builds (attributes, metadata) from a field table:
        defaults first, then whatever the block holds """
    attributes = {}
    metadata = {}
    for a_tag, an_attribute, a_default in table:
        if isinstance(a_default, tuple):
            if a_tag in data:
                attributes[an_attribute] = tuple(_scalar(data, a_tag, '').split(','))
            else:
                attributes[an_attribute] = a_default
            metadata[a_tag] = ','.join(attributes[an_attribute])
        else:
            attributes[an_attribute] = _scalar(data, a_tag, a_default)
            metadata[a_tag] = a_default
    metadata.update(_frozen(data))
    return attributes, MappingProxyType(metadata)


def _as_view(buffer):
    return buffer if isinstance(buffer, memoryview) else memoryview(buffer)


def parse_signature(buffer):
    """ Returns the file signature, raising SignatureMismatchError if it is not one """
    content = bytes(buffer[:snx.SIGNATURE_LENGTH]).decode(snx.TEXT_ENCODING, errors='replace')
    if not SIGNATURE_PATTERN.match(content):
        raise snx.SignatureMismatchError(f'Cannot parse this file. Signature does not match: {content!r}')
    return content


def parse_footer(buffer, address_size=snx.ADDRESS_SIZE, byte_length=snx.LENGTH_FIELD_SIZE):
    """ Reads the footer whose address is held by the last bytes of the file """
    view = _as_view(buffer)
    address = snx.read_endian_int_at_position(view, len(view) - address_size, num_bytes=address_size)
    logger.debug('Footer at %d', address)
    data = sng.parse_key_value(view, address, byte_length)
    nested = sng.extract_nested_key_value(data, '_', ['PAGE'], keep_lists=True)
    footer = {a_group: dict(a_default) for a_group, a_default in FOOTER_DEFAULTS.items()}
    footer.update(nested)
    return MappingProxyType({a_group: MappingProxyType(a_value) for a_group, a_value in footer.items()})


def parse_header(buffer, footer, byte_length=snx.LENGTH_FIELD_SIZE):
    """ Reads the header located by FILE_FEATURE in the footer """
    feature = footer.get('FILE', {}).get('FEATURE')
    address = _address(feature) if feature else snx.DEFAULT_HEADER_ADDRESS
    logger.debug('Header at %d', address)
    data = sng.parse_key_value(buffer, address, byte_length)
    return MappingProxyType({**HEADER_DEFAULTS, **_frozen(data)})


def parse_layer(buffer, address_value, byte_length=snx.LENGTH_FIELD_SIZE):
    """ Reads the layer block at 'address_value' and its bitmap """
    data = sng.parse_key_value(buffer, _address(address_value), byte_length)
    attributes, metadata = _fields(data, LAYER_FIELDS)
    bitmap_buffer = snx.get_content_at_address(buffer, _address(attributes['bitmap']), byte_length)
    return Layer(address=address_value, metadata=metadata, bitmap_buffer=bitmap_buffer, **attributes)


def parse_page(buffer, address_value, byte_length=snx.LENGTH_FIELD_SIZE):
    """ Reads a page, its five layer slots, layer info and sequence """
    data = sng.parse_key_value(buffer, _address(address_value), byte_length)
    attributes, metadata = _fields(data, PAGE_FIELDS)
    layers = MappingProxyType({
        a_name: parse_layer(buffer, _scalar(data, a_name.value, '0'), byte_length)
        for a_name in LayerName})
    layer_info_text = _scalar(data, 'LAYERINFO', None)
    layer_info = sng.extract_layer_info(layer_info_text) if layer_info_text is not None else ()
    layer_seq = tuple(a_name for a_name in _scalar(data, 'LAYERSEQ', '').split(',') if a_name)
    return Page(
        address=address_value,
        layers=layers,
        layer_info=layer_info,
        layer_seq=layer_seq,
        metadata=metadata,
        total_path_buffer=snx.get_content_at_address(
            buffer, _address(attributes['total_path']), byte_length),
        recogn_text_buffer=snx.get_content_at_address(
            buffer, _address(attributes['recogn_text']), byte_length),
        **attributes)


def _page_sort_key(key):
    if key.isascii() and key.isdecimal():
        return (0, int(key), key)
    return (1, 0, key)


def parse_pages(buffer, footer, numeric_page_order=snx.PAGE_SORT_NUMERIC, byte_length=snx.LENGTH_FIELD_SIZE):
    """ Reads the pages listed in the footer PAGE group.
        Keys are sorted as strings ('1', '10', '2') unless numeric_page_order is set """
    page_group = footer['PAGE']
    if numeric_page_order:
        page_keys = sorted(page_group, key=_page_sort_key)
    else:
        page_keys = sorted(page_group)
    logger.debug('Reading %d page(s)', len(page_keys))
    return tuple(parse_page(buffer, _first(page_group[a_key]), byte_length) for a_key in page_keys)


def parse_cover(buffer, footer, byte_length=snx.LENGTH_FIELD_SIZE):
    """ Returns the cover when COVER_0 (or else COVER_1) points somewhere """
    cover_group = footer['COVER']
    address_value = cover_group['0'] if '0' in cover_group else cover_group.get('1')
    address = _address(address_value)
    if address > 0:
        return Cover(
            address=str(address),
            bitmap_buffer=snx.get_content_at_address(buffer, address, byte_length))
    return None


def parse_keyword(buffer, address_value, byte_length=snx.LENGTH_FIELD_SIZE):
    data = sng.parse_key_value(buffer, _address(address_value), byte_length)
    attributes, metadata = _fields(data, KEYWORD_FIELDS)
    bitmap_buffer = snx.get_content_at_address(buffer, _address(attributes['site']), byte_length)
    return Keyword(address=address_value, metadata=metadata, bitmap_buffer=bitmap_buffer, **attributes)


def parse_title(buffer, address_value, byte_length=snx.LENGTH_FIELD_SIZE):
    data = sng.parse_key_value(buffer, _address(address_value), byte_length)
    attributes, metadata = _fields(data, TITLE_FIELDS)
    bitmap_buffer = snx.get_content_at_address(buffer, _address(attributes['bitmap']), byte_length)
    return Title(address=address_value, metadata=metadata, bitmap_buffer=bitmap_buffer, **attributes)


def _parse_entries(buffer, group, parse_entry, byte_length):
    """ {category: address or [addresses]} -> {category: (entries, ...)} """
    entries = {}
    for a_category, a_value in group.items():
        addresses = [a_value] if isinstance(a_value, str) else a_value
        entries[a_category] = tuple(
            parse_entry(buffer, an_address, byte_length) for an_address in addresses)
    return MappingProxyType(entries)


def parse_keywords(buffer, footer, byte_length=snx.LENGTH_FIELD_SIZE):
    return _parse_entries(buffer, footer['KEYWORD'], parse_keyword, byte_length)


def parse_titles(buffer, footer, byte_length=snx.LENGTH_FIELD_SIZE):
    return _parse_entries(buffer, footer['TITLE'], parse_title, byte_length)


def parse_note(buffer, numeric_page_order=snx.PAGE_SORT_NUMERIC):
    """ Decodes a whole note file held in 'buffer' (bytes).

        Either returns the complete Notebook or raises a NoteParseError;
        buffers in the result are views over 'buffer'. """
    view = _as_view(buffer)
    signature = parse_signature(view)
    footer = parse_footer(view)
    header = parse_header(view, footer)
    pages = parse_pages(view, footer, numeric_page_order=numeric_page_order)
    cover = parse_cover(view, footer)
    keywords = parse_keywords(view, footer)
    titles = parse_titles(view, footer)
    page_width, page_height = snx.series_bounds(_scalar(header, 'APPLY_EQUIPMENT', '0'))
    logger.debug(
        'Decoded %s: %d page(s), %d keyword categories, %d title categories',
        signature, len(pages), len(keywords), len(titles))
    return Notebook(
        signature=signature,
        header=header,
        footer=footer,
        pages=pages,
        cover=cover,
        keywords=keywords,
        titles=titles,
        page_width=page_width,
        page_height=page_height)


def load_note(note_fn, numeric_page_order=snx.PAGE_SORT_NUMERIC):
    """ Reads and decodes the note file named note_fn """
    with open(note_fn, 'rb') as a_note_file:
        binary_data = a_note_file.read()
    return parse_note(binary_data, numeric_page_order=numeric_page_order)


def decode_recognized_text(page):
    """ Returns the page's recognized text (base64 encoded json), or None """
    if page.recogn_text_buffer is None:
        return None
    try:
        encoded_json = base64.b64decode(bytes(page.recogn_text_buffer)).decode('utf-8')
        return json.loads(encoded_json)
    except (ValueError, UnicodeDecodeError) as e:
        raise snx.NoteParseError(f'Unreadable recognized text at {page.recogn_text}: {e}') from e


def _safe_name(a_name):
    return re.sub(r'[^A-Za-z0-9_.-]', '_', a_name)


def dump_buffers(notebook, directory):
    """ Writes every raw buffer of 'notebook' to 'directory'.
        Returns the list of written files """
    os.makedirs(directory, exist_ok=True)
    named_buffers = []
    if notebook.cover is not None:
        named_buffers.append(('cover', notebook.cover.bitmap_buffer))
    for page_index, a_page in enumerate(notebook.pages, start=1):
        for a_name, a_layer in a_page.layers.items():
            named_buffers.append((f'page{page_index}_{a_name.value}', a_layer.bitmap_buffer))
        named_buffers.append((f'page{page_index}_totalpath', a_page.total_path_buffer))
        named_buffers.append((f'page{page_index}_recogntext', a_page.recogn_text_buffer))
    for a_prefix, entries in (('keyword', notebook.keywords), ('title', notebook.titles)):
        for a_category, a_list in entries.items():
            for entry_index, an_entry in enumerate(a_list, start=1):
                named_buffers.append(
                    (f'{a_prefix}_{_safe_name(a_category)}_{entry_index}', an_entry.bitmap_buffer))

    written = []
    for a_name, a_buffer in named_buffers:
        if a_buffer is None:
            continue
        output_fn = os.path.join(directory, f'{a_name}.bin')
        with open(output_fn, 'wb') as a_file:
            a_file.write(a_buffer)
        written.append(output_fn)
    return written


def main(argv=None):
    parser = argparse.ArgumentParser(description="SNOTEX command line interpreter (CLI) for reading Supernote notebooks.")
    parser.add_argument("filename", help="The .note file to process")
    parser.add_argument('-j', '--json', metavar='FILE', help="Write the notebook metadata as json to FILE ('-' for the console)")
    parser.add_argument('-d', '--dump', metavar='DIR', help='Write every raw bitmap and path buffer to DIR')
    parser.add_argument(
        '--numeric-page-order', action='store_true', default=snx.PAGE_SORT_NUMERIC,
        help='Sort pages numerically (PAGE2 before PAGE10). [%(default)s]')
    parser.add_argument('--debug', action='store_true', help='Verbose logging')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s')

    try:
        notebook = load_note(args.filename, numeric_page_order=args.numeric_page_order)
    except (snx.NoteParseError, OSError) as e:
        print(f'*** {args.filename}: {e}')
        return 1

    to_console = args.json == '-'
    if to_console:
        print(json.dumps(notebook.to_dict(), indent=4))
    else:
        print()
        print(f'SNOTEX Version {VERSION}')
        print('-----------------')
        print()
        print(f'  > File: {args.filename}')
        print(f'  > Signature: {notebook.signature}')
        print(f'  > Device: {notebook.header["APPLY_EQUIPMENT"]} ({notebook.page_width}x{notebook.page_height})')
        print(f'  > Pages: {len(notebook.pages)}')
        print(f'  > Cover: {"yes" if notebook.cover is not None else "no"}')
        print(f'  > Keywords: {sum(len(x) for x in notebook.keywords.values())}')
        print(f'  > Titles: {sum(len(x) for x in notebook.titles.values())}')

        if args.json:
            with open(args.json, 'w') as file:
                file.write(json.dumps(notebook.to_dict(), indent=4))
            print(f'  > Generated file: {args.json}')

    if args.dump:
        written = dump_buffers(notebook, args.dump)
        # The console holds json only
        if not to_console:
            print(f'  > Wrote {len(written)} buffer(s) to {args.dump}')

    return 0


if __name__ == '__main__':
    sys.exit(main())
