""" Readers for the two text grammars found inside note blocks.

    Tagged text:  <KEY:VALUE><KEY:VALUE>...
        key and value are non-empty and hold none of '<', '>' or ':'.
    Layer info:   [{"key"#value,"key"#"value",...},{...}]
        one brace group per layer, keys exclude '"[{}]',
        values exclude '"[{}],' and may be quoted.
"""
import logging
import re
from dataclasses import dataclass

import snx_utils as snx

logger = logging.getLogger(__name__)

TAG_OPEN = '<'
TAG_CLOSE = '>'
TAG_SEPARATOR = ':'
TAG_EXCLUDED = '<>:'
GROUP_OPEN = '{'
GROUP_CLOSE = '}'
GROUP_EXCLUDED = '{}'
PAIR_QUOTE = '"'
PAIR_SEPARATOR = '#'
PAIR_KEY_EXCLUDED = '"[{}]'
PAIR_VALUE_EXCLUDED = '"[{}],'
DEFAULT_LAYER_INFO_NAME = 'Main layer'
LAYER_ID_PATTERN = re.compile(r'\s*([+-]?[0-9]+)')


@dataclass(frozen=True)
class LayerInfo:
    layer_id: int = 0
    name: str = DEFAULT_LAYER_INFO_NAME
    is_background_layer: bool = False
    is_allow_add: bool = False
    is_current_layer: bool = False
    is_visible: bool = False
    is_deleted: bool = False
    is_allow_up: bool = False
    is_allow_down: bool = False

    def to_dict(self):
        return {
            'layerId': self.layer_id,
            'name': self.name,
            **{a_key: getattr(self, an_attribute) for a_key, an_attribute in LAYER_INFO_FLAGS}}


# (raw key, LayerInfo attribute) of the boolean fields
LAYER_INFO_FLAGS = (
    ('isBackgroundLayer', 'is_background_layer'),
    ('isAllowAdd', 'is_allow_add'),
    ('isCurrentLayer', 'is_current_layer'),
    ('isVisible', 'is_visible'),
    ('isDeleted', 'is_deleted'),
    ('isAllowUp', 'is_allow_up'),
    ('isAllowDown', 'is_allow_down'))


def _skip_run(text, position, excluded):
    """ Returns the index of the first character at or after 'position'
        that belongs to 'excluded' (or the text length) """
    while position < len(text) and text[position] not in excluded:
        position += 1
    return position


def _scan_tag(text, start):
    """ Reads a <KEY:VALUE> tag whose '<' is at 'start'.
        Returns (key, value, end) or None when there is no tag here """
    key_end = _skip_run(text, start + 1, TAG_EXCLUDED)
    if key_end == start + 1 or key_end >= len(text) or text[key_end] != TAG_SEPARATOR:
        return None
    value_end = _skip_run(text, key_end + 1, TAG_EXCLUDED)
    if value_end == key_end + 1 or value_end >= len(text) or text[value_end] != TAG_CLOSE:
        return None
    return text[start + 1:key_end], text[key_end + 1:value_end], value_end + 1


def extract_key_value(content):
    """ Extracts <KEY:VALUE> pairs from 'content', in order.
        A repeated key turns its value into a list of every occurrence """
    data = {}
    position = content.find(TAG_OPEN)
    while position != -1:
        tag = _scan_tag(content, position)
        if tag is None:
            position = content.find(TAG_OPEN, position + 1)
            continue
        key, value, end = tag
        if key not in data:
            data[key] = value
        elif isinstance(data[key], str):
            data[key] = [data[key], value]
        else:
            data[key].append(value)
        position = content.find(TAG_OPEN, end)
    return data


def parse_key_value(buffer, address, byte_length=snx.LENGTH_FIELD_SIZE):
    """ Extracts the key-value pairs of the block at 'address' """
    content = snx.get_content_at_address(buffer, address, byte_length)
    if content is None:
        return {}
    return extract_key_value(snx.decode_text(content))


def _split_key(key, delimiter, prefixes):
    index = key.find(delimiter) if delimiter else -1
    if index > -1:
        return key[:index], key[index + 1:]
    # Numbered keys such as PAGE12
    for a_prefix in prefixes:
        if key.startswith(a_prefix):
            return a_prefix, key[len(a_prefix):]
    return None, None


def extract_nested_key_value(record, delimiter='_', prefixes=(), keep_lists=False):
    """ Groups flat keys into {group: {sub_key: value}}.

        The delimiter is tried first ('STYLE_NAME' -> 'STYLE', 'NAME'), then the
        prefixes in the given order ('PAGE1' -> 'PAGE', '1'). Keys matching
        neither rule, or leaving an empty group or sub-key, are dropped.
        List values are skipped unless 'keep_lists' is set, in which case
        they are kept as tuples. """
    data = {}
    for key, value in record.items():
        if not isinstance(value, str):
            if not keep_lists:
                continue
            value = tuple(value)
        main, sub = _split_key(key, delimiter, prefixes)
        if not (main and sub):
            continue
        data.setdefault(main, {})[sub] = value
    return data


def _scan_group(text, start):
    """ Reads a {...} group whose '{' is at 'start'.
        Returns (interior, end) or None """
    end = _skip_run(text, start + 1, GROUP_EXCLUDED)
    if end == start + 1 or end >= len(text) or text[end] != GROUP_CLOSE:
        return None
    return text[start + 1:end], end + 1


def _scan_pair(text, start):
    """ Reads a "key"#value pair whose opening quote is at 'start'.
        Returns (key, value, end), 'end' being just past the value """
    key_end = _skip_run(text, start + 1, PAIR_KEY_EXCLUDED)
    if key_end == start + 1 or key_end + 1 >= len(text):
        return None
    if text[key_end] != PAIR_QUOTE or text[key_end + 1] != PAIR_SEPARATOR:
        return None
    value_start = key_end + 2
    if value_start < len(text) and text[value_start] == PAIR_QUOTE:
        value_start += 1
    value_end = _skip_run(text, value_start, PAIR_VALUE_EXCLUDED)
    if value_end == value_start:
        return None
    return text[start + 1:key_end], text[value_start:value_end], value_end


def _extract_pairs(group):
    pairs = {}
    position = group.find(PAIR_QUOTE)
    while position != -1:
        pair = _scan_pair(group, position)
        if pair is None:
            position = group.find(PAIR_QUOTE, position + 1)
            continue
        key, value, end = pair
        pairs[key] = value
        # The closing quote of a quoted value may open the next candidate
        position = group.find(PAIR_QUOTE, end)
    return pairs


def _leading_int(value, default):
    """ Leading signed integer of 'value' ("2x" -> 2, "1.0" -> 1), or 'default' """
    if value is None:
        return default
    match = LAYER_ID_PATTERN.match(value)
    if match is None:
        return default
    return int(match.group(1))


def _layer_info_from_pairs(pairs):
    layer_id = _leading_int(pairs.get('layerId'), 0)
    flags = {an_attribute: pairs.get(a_key) == 'true' for a_key, an_attribute in LAYER_INFO_FLAGS}
    return LayerInfo(layer_id=layer_id, name=pairs.get('name', DEFAULT_LAYER_INFO_NAME), **flags)


def extract_layer_info(content):
    """ Returns one LayerInfo per {...} group found in 'content' """
    layer_infos = []
    position = content.find(GROUP_OPEN)
    while position != -1:
        group = _scan_group(content, position)
        if group is None:
            position = content.find(GROUP_OPEN, position + 1)
            continue
        interior, end = group
        if GROUP_OPEN in interior or GROUP_CLOSE in interior:
            raise snx.MalformedGrammarError(f'Unreadable layer group at position {position}')
        layer_infos.append(_layer_info_from_pairs(_extract_pairs(interior)))
        position = content.find(GROUP_OPEN, end)
    logger.debug('Extracted %d layer info record(s)', len(layer_infos))
    return tuple(layer_infos)
