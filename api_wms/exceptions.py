# api_wms/exceptions.py
"""Exceptions du service WMS, rendues en ServiceExceptionReport OGC."""

import xml.etree.ElementTree as ET


class ServiceException(Exception):
    """
    Erreur de requête WMS.

    Le code reprend les codes OGC (LayerNotDefined, InvalidCRS, ...) ou les
    codes propres au serveur ("Size error", "Filter string rejected").
    """

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def to_xml(self, version: str = '1.3.0') -> bytes:
        attributes = {'version': version}
        if version != '1.1.1':
            attributes['xmlns'] = 'http://www.opengis.net/ogc'
        report = ET.Element('ServiceExceptionReport', attributes)
        exception = ET.SubElement(report, 'ServiceException', {'code': self.code})
        exception.text = self.message
        return ET.tostring(report, encoding='utf-8', xml_declaration=True)

    def __repr__(self):
        return f'<ServiceException {self.code}: {self.message}>'
