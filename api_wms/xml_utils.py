# api_wms/xml_utils.py
"""Sérialisation des documents XML du service."""

from typing import Optional
import xml.etree.ElementTree as ET

XLINK_NS = 'http://www.w3.org/1999/xlink'


def format_number(value: float, precision: int = 6) -> str:
    """1.500000 → '1.5' ; -0 → '0'."""
    text = f'{value:.{max(precision, 0)}f}'
    if '.' in text:
        text = text.rstrip('0').rstrip('.')
    if text in ('-0', ''):
        text = '0'
    return text


def online_resource(parent: ET.Element, href: str, tag: str = 'OnlineResource') -> ET.Element:
    """<OnlineResource xmlns:xlink xlink:type="simple" xlink:href="..."/>"""
    return ET.SubElement(parent, tag, {
        'xmlns:xlink': XLINK_NS,
        'xlink:type': 'simple',
        'xlink:href': href,
    })


def text_element(parent: ET.Element, tag: str, text, attrib: Optional[dict] = None) -> ET.Element:
    element = ET.SubElement(parent, tag, attrib or {})
    element.text = '' if text is None else str(text)
    return element


def to_bytes(root: ET.Element, doctype: Optional[str] = None) -> bytes:
    ET.indent(root, space=' ')
    header = '<?xml version="1.0" encoding="utf-8"?>\n'
    if doctype:
        header += f'<!DOCTYPE {doctype}>\n'
    return (header + ET.tostring(root, encoding='unicode') + '\n').encode('utf-8')
