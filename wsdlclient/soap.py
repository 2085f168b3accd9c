import lxml.etree, lxml.builder, decimal, dateutil.relativedelta, dateutil.parser, datetime, collections, collections.abc, re, logging

from .errors import ResponseDecodeError
from .schema import XML, Normalizer, one_or_many

logger = logging.getLogger(__name__)

def _format_relativedelta(v):
    s = 'P{years}Y{months}M{days}DT{hours}H{minutes}M{seconds}S'.format(**v.__dict__)
    if '-' in s:
        s = s.replace('-', '')
        s = '-' + s
    return s

def _parse_relativedelta(v):
    kwargs = re.search(r'(?P<negative>-)?P'
                       r'(?P<years>\d+Y)?'
                       r'(?P<months>\d+M)?'
                       r'(?P<days>\d+D)?'
                       r'T?'
                       r'(?P<hours>\d+H)?'
                       r'(?P<minutes>\d+M)?'
                       r'(?P<seconds>\d+S)?',
                       v).groupdict('0')
    negative = kwargs.pop('negative')
    kwargs = {k: int(re.sub(r'\D', '', v)) for k, v in kwargs.items()}
    rd = dateutil.relativedelta.relativedelta(**kwargs)
    if negative != '0':
        return -rd
    return rd

def _parse_time(val):
    val = dateutil.parser.parse(val)
    return val.time().replace(tzinfo=val.tzinfo)

def _parse_bool(val):
    if val in ('false', '0'):
        return False
    elif val in ('true', '1'):
        return True
    else:
        raise ValueError('{} not a boolean'.format(val))

class SOAP(object):
    namespaces = {'soapenv': 'http://schemas.xmlsoap.org/soap/envelope/',
                  'xsi': 'http://www.w3.org/2001/XMLSchema-instance',
                  'xsd': 'http://www.w3.org/2001/XMLSchema',
                  }
    # prefix the target namespace is bound to in outgoing envelopes
    prefix = 'web'

    formatters = collections.defaultdict(lambda: str, {
        type(''): str,
        bool: lambda v: 'true' if v else 'false',
        type(None): lambda v: None,
        datetime.date: datetime.date.isoformat,
        datetime.time: lambda v: re.sub(r'\.\d+(\+|Z|$)', r'\1', v.isoformat()),
        datetime.datetime: lambda v: re.sub(r'\.\d+(\+|Z|$)', r'\1', v.isoformat()),
        dateutil.relativedelta.relativedelta: _format_relativedelta,
        list: lambda v: ' '.join(SOAP.format(item) or '' for item in v),
    })

    parsers = collections.defaultdict(lambda: str, {
        'string': str,
        'boolean': _parse_bool,
        'decimal': decimal.Decimal,
        'float': float,
        'double': float,
        'duration': _parse_relativedelta,
        'dateTime': dateutil.parser.parse,
        'time': _parse_time,
        'date': lambda v: dateutil.parser.parse(v).date(),
        'integer': int,
        'byte': int,
        'short': int,
        'int': int,
        'long': int,
        'unsignedByte': int,
        'unsignedShort': int,
        'unsignedInt': int,
        'unsignedLong': int,
        'negativeInteger': int,
        'positiveInteger': int,
        'nonNegativeInteger': int,
        'nonPositiveInteger': int,
        'anyURI': str,
        'language': str,
    })

    @staticmethod
    def format(value):
        return SOAP.formatters[type(value)](value)

    @staticmethod
    def soap_action(target_namespace, operation_name):
        # servers dispatch on this; no separator between the two parts
        return target_namespace + operation_name

    @staticmethod
    def build_envelope(target_namespace, operation_name, shape, values):
        nsmap = dict(SOAP.namespaces)
        nsmap[SOAP.prefix] = target_namespace
        E = lxml.builder.ElementMaker(namespace=SOAP.namespaces['soapenv'], nsmap=nsmap)
        body = E.Body()
        soap_envelope = E.Envelope(E.Header(), body)

        operation = lxml.etree.SubElement(body, '{%s}%s' % (target_namespace, operation_name))
        values = values or {}
        for parameter in shape:
            elem = lxml.etree.SubElement(operation, '{%s}%s' % (target_namespace, parameter.name),
                                         attrib={'type': parameter.type})
            text = SOAP.format(values.get(parameter.name))
            if text:
                elem.text = text

        return lxml.etree.tostring(soap_envelope, xml_declaration=True, encoding='UTF-8').decode('utf-8')

    @staticmethod
    def get_body(tree):
        envelope = XML.child(tree, 'Envelope')
        if XML.find_key(envelope, 'Body') is None:
            return None
        bodies = one_or_many(XML.child(envelope, 'Body'))
        return bodies[0] if bodies else ''

    @staticmethod
    def find_fault(tree):
        return XML.child(SOAP.get_body(tree), 'Fault')

    @staticmethod
    def find_rows(node, names):
        if not isinstance(node, collections.abc.Mapping):
            return []
        keys = {XML.stripns(key) for key in node if key not in ('$', '_')}
        if keys & names:
            return [node]
        rows = []
        for key, children in node.items():
            if key in ('$', '_'):
                continue
            for child in one_or_many(children):
                rows.extend(SOAP.find_rows(child, names))
        return rows

    @staticmethod
    def find_values(row, name):
        # parameters spliced from nested types sit below the row, so search
        # level by level and keep every match at the shallowest level
        level = [row]
        while level:
            found, deeper = [], []
            for node in level:
                if not isinstance(node, collections.abc.Mapping):
                    continue
                for key, children in node.items():
                    if key in ('$', '_'):
                        continue
                    if XML.stripns(key) == name:
                        found.extend(one_or_many(children) or [''])
                    else:
                        deeper.extend(one_or_many(children))
            if found:
                return found
            level = deeper
        return None

    @staticmethod
    def text(node):
        if isinstance(node, str):
            return node
        attrs = node.get('$') or {}
        if any(XML.stripns(k) == 'nil' and v == 'true' for k, v in attrs.items()):
            return None
        if any(key not in ('$', '_') for key in node):
            children = collections.OrderedDict((k, v) for k, v in node.items() if k not in ('$', '_'))
            return Normalizer.simplify(children)
        return node.get('_', '')

    @staticmethod
    def decode_row(row, shape, message, typed=False):
        record = collections.OrderedDict()
        for parameter in shape:
            nodes = SOAP.find_values(row, parameter.name)
            if nodes is None:
                if parameter.min_occurs > 0:
                    raise ResponseDecodeError(message, 'missing element {}'.format(parameter.name))
                record[parameter.name] = None
                continue
            values = [SOAP.text(node) for node in nodes]
            if typed:
                values = [SOAP.parse(value, parameter, message) for value in values]
            record[parameter.name] = values[0] if len(values) == 1 else values
        return record

    @staticmethod
    def parse(value, parameter, message):
        if not isinstance(value, str):
            return value
        parser = SOAP.parsers[XML.stripns(parameter.type)]
        if value == '' and parser is not str:
            return None
        try:
            return parser(value)
        except (ValueError, OverflowError, decimal.InvalidOperation) as e:
            raise ResponseDecodeError(message, '{}={!r} is not a valid {}: {}'.format(
                parameter.name, value, parameter.type, e)) from e

    @staticmethod
    def decode_response(tree, shape, message='', typed=False):
        body = SOAP.get_body(tree)
        if body is None:
            raise ResponseDecodeError(message, 'no SOAP Envelope/Body in response')
        if not shape:
            return collections.OrderedDict()
        rows = SOAP.find_rows(body, {parameter.name for parameter in shape})
        if not rows:
            raise ResponseDecodeError(message, 'none of {} found in response body'.format(
                ', '.join(parameter.name for parameter in shape)))
        records = [SOAP.decode_row(row, shape, message, typed) for row in rows]
        logger.debug('decoded %d row(s) of %s', len(records), message)
        if len(records) == 1:
            return records[0]
        return records
