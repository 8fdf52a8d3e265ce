"""
pytest fixtures: a byte level writer for note files.

Blocks are written the way the device writes them: a 4 bytes little endian
length followed by the content; the last 4 bytes of the file hold the
address of the footer block.
"""
import base64
import json
from types import SimpleNamespace

import pytest

# Layer info as written by the device for a page with a main and a background layer
LAYER_INFO_TEXT = (
    '[{"layerId"#3,"name"#"Layer 3","isBackgroundLayer"#false,"isAllowAdd"#false,'
    '"isCurrentLayer"#false,"isVisible"#true,"isDeleted"#true,"isAllowUp"#false,"isAllowDown"#false},'
    '{"layerId"#0,"name"#"Main Layer","isBackgroundLayer"#false,"isAllowAdd"#false,"isCurrentLayer"#true,'
    '"isVisible"#true,"isDeleted"#false,"isAllowUp"#false,"isAllowDown"#false},'
    '{"layerId"#-1,"name"#"Background Layer","isBackgroundLayer"#true,"isAllowAdd"#true,'
    '"isCurrentLayer"#false,"isVisible"#true,"isDeleted"#false,"isAllowUp"#false,"isAllowDown"#false}]')
RECOGNIZED_TEXT = {"elements": [{"type": "Text", "label": "hello world"}]}


class NoteBuilder:
    """ Appends blocks to a note file and returns their addresses """

    def __init__(self, signature='noteSN_FILE_VER_20230015'):
        self.data = bytearray(signature.encode('utf-8'))

    def pad_to(self, address):
        assert address >= len(self.data)
        self.data += bytes(address - len(self.data))

    def add_block(self, content):
        address = len(self.data)
        payload = content.encode('utf-8') if isinstance(content, str) else bytes(content)
        self.data += len(payload).to_bytes(4, byteorder='little') + payload
        return address

    def add_tags(self, *pairs):
        return self.add_block(''.join(f'<{a_key}:{a_value}>' for a_key, a_value in pairs))

    def finish(self, footer_text):
        footer_address = self.add_block(footer_text)
        return bytes(self.data) + footer_address.to_bytes(4, byteorder='little')


@pytest.fixture
def note_builder():
    return NoteBuilder()


def build_sample_note(apply_equipment='N6'):
    builder = NoteBuilder()
    header = builder.add_tags(
        ('MODULE_LABEL', 'SNFILE_FEATURE'), ('FILE_TYPE', 'NOTE'),
        ('APPLY_EQUIPMENT', apply_equipment), ('FINALOPERATION_PAGE', '1'),
        ('FILE_ID', 'F20240101120000000000abcdefghijkl'))
    main_bitmap = builder.add_block(b'\x62\xff\x65\x10')
    bg_bitmap = builder.add_block(b'\x62\x80')
    main_layer = builder.add_tags(
        ('LAYERTYPE', 'NOTE'), ('LAYERPROTOCOL', 'RATTA_RLE'), ('LAYERNAME', 'MAINLAYER'),
        ('LAYERPATH', '0'), ('LAYERBITMAP', main_bitmap), ('LAYERVECTORGRAPH', '0'), ('LAYERRECOGN', '0'))
    bg_layer = builder.add_tags(('LAYERNAME', 'BGLAYER'), ('LAYERBITMAP', bg_bitmap))
    total_path = builder.add_block(b'\x01\x02\x03')
    recogn_text = builder.add_block(base64.b64encode(json.dumps(RECOGNIZED_TEXT).encode('utf-8')))
    page1 = builder.add_tags(
        ('PAGESTYLE', 'style_white'), ('PAGESTYLEMD5', '0'), ('LAYERINFO', LAYER_INFO_TEXT),
        ('LAYERSEQ', 'MAINLAYER,BGLAYER'), ('MAINLAYER', main_layer), ('LAYER1', '0'), ('LAYER2', '0'),
        ('LAYER3', '0'), ('BGLAYER', bg_layer), ('TOTALPATH', total_path), ('THUMBNAILTYPE', '0'),
        ('RECOGNSTATUS', '1'), ('RECOGNTEXT', recogn_text), ('PAGEID', 'P20240101120000'),
        ('ORIENTATION', '1000'))
    page2 = builder.add_tags(('PAGESTYLE', 'style_dots'), ('LAYERSEQ', 'MAINLAYER'))
    cover = builder.add_block(b'cover-bitmap')
    keyword_site = builder.add_block(b'keyword-bitmap')
    keyword1 = builder.add_tags(
        ('KEYWORDSEQNO', '1'), ('KEYWORDPAGE', '1'), ('KEYWORDRECT', '10,20,30,40'),
        ('KEYWORDSITE', keyword_site), ('KEYWORDLEN', '4'), ('KEYWORD', 'todo'))
    keyword2 = builder.add_tags(('KEYWORDSEQNO', '2'), ('KEYWORD', 'idea'))
    title_bitmap = builder.add_block(b'title-bitmap')
    title = builder.add_tags(
        ('TITLESEQNO', '0'), ('TITLELEVEL', '2'), ('TITLERECT', '1,2,3,4'), ('TITLEBITMAP', title_bitmap))
    buffer = builder.finish(
        f'<PAGE1:{page1}><PAGE2:{page2}><COVER_1:{cover}>'
        f'<KEYWORD_00010001:{keyword1}><KEYWORD_00010001:{keyword2}>'
        f'<TITLE_00010002:{title}><STYLE_style_white:{bg_bitmap}><DIRTY:0><FILE_FEATURE:{header}>')
    return SimpleNamespace(
        buffer=buffer, header=header, page1=page1, page2=page2, cover=cover,
        keyword1=keyword1, keyword2=keyword2, title=title)


@pytest.fixture
def sample_note():
    return build_sample_note()


@pytest.fixture
def sample_note_factory():
    return build_sample_note
