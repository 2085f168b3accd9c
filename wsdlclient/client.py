import lxml.etree, requests, hashlib, os, collections, logging

from .errors import WsdlLoadError, UnknownOperationError, TransportError, ResponseDecodeError
from .schema import XML, Normalizer, SchemaResolver
from .soap import SOAP

logger = logging.getLogger(__name__)

CACHE_DIRECTORY = os.path.join('/', 'tmp', 'wsdls')

class Client(object):
    def __init__(self, wsdl, session=None, timeout=None, cache=False, typed=False):
        self._wsdl = wsdl
        self.session = session
        self.timeout = timeout
        self.typed = typed

        content = WsdlParser.get_wsdl_xml(wsdl, session=session, timeout=timeout, cache=cache)
        self.model = WsdlParser.parse(wsdl, content)
        self.resolver = SchemaResolver(self.model)
        self.url = self.model.service_url or wsdl
        self._operations = collections.OrderedDict((o.name, o) for o in self.model.operations)

        for operation in self.model.operations:
            # never shadow the client's own methods
            if not hasattr(self, operation.name):
                setattr(self, operation.name, SoapCall(self, operation))
        logger.info('loaded %s: %d operations, endpoint %s', wsdl, len(self._operations), self.url)

    def list_operations(self):
        return list(self._operations.values())

    def find_operation(self, name):
        try:
            return self._operations[name]
        except KeyError:
            raise UnknownOperationError(name) from None

    def resolve_shape(self, message_name):
        return self.resolver.resolve_shape(message_name)

    def input_shape(self, operation_name):
        return self.resolve_shape(self.find_operation(operation_name).input)

    def output_shape(self, operation_name):
        output = self.find_operation(operation_name).output
        if not output:
            return ()
        return self.resolve_shape(output)

    def build_envelope(self, operation_name, values=None):
        shape = self.input_shape(operation_name)
        return SOAP.build_envelope(self.model.target_namespace, operation_name, shape, values)

    def decode_response(self, tree, output_message, typed=None):
        shape = self.resolve_shape(output_message) if output_message else ()
        return SOAP.decode_response(tree, shape, output_message, self.typed if typed is None else typed)

    def http_headers(self, operation_name):
        return {'Content-Type': 'text/xml; charset=utf-8',
                'SOAPAction': SOAP.soap_action(self.model.target_namespace, operation_name)}

    def call(self, operation_name, arguments=None):
        operation = self.find_operation(operation_name)
        body = self.build_envelope(operation_name, arguments)
        headers = self.http_headers(operation_name)
        logger.debug('POST %s SOAPAction: %s\n%s', self.url, headers['SOAPAction'], body)

        try:
            response = (self.session or requests).post(self.url, data=body.encode('utf-8'),
                                                       headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(operation_name, reason=e) from e
        logger.info('%s -> %s', operation_name, response.status_code)

        if not 200 <= response.status_code < 300:
            raise TransportError(operation_name, response.status_code, response.text)

        try:
            tree = XML.parse(response.content)
        except lxml.etree.XMLSyntaxError as e:
            raise ResponseDecodeError(operation.output, e) from e
        if SOAP.find_fault(tree) is not None:
            raise TransportError(operation_name, response.status_code, response.text)

        return {'status': response.status_code,
                'data': self.decode_response(tree, operation.output)}

    def __str__(self):
        parts = ['SOAP client, available actions:']
        parts.extend(sorted(self._operations))
        return '\n  '.join(parts)

    def __repr__(self):
        return 'Client(wsdl={!r})'.format(self._wsdl)

class SoapCall(object):
    def __init__(self, client, operation):
        self.client = client
        self.operation = operation

    @property
    def name(self):
        return self.operation.name

    @property
    def SOAPAction(self):
        return self.client.http_headers(self.name)['SOAPAction']

    @property
    def input_body(self):
        return self.client.input_shape(self.name)

    @property
    def output_body(self):
        return self.client.output_shape(self.name)

    def __call__(self, arguments=None, **kwargs):
        arguments = dict(arguments or {}, **kwargs)
        return self.client.call(self.name, arguments)

    def __repr__(self):
        return 'SoapCall(name={!r}, input={!r}, output={!r})'.format(
            self.name, self.operation.input, self.operation.output)

class WsdlParser(object):
    @staticmethod
    def get_wsdl_xml(wsdl_path, session=None, timeout=None, cache=False):
        if os.path.isfile(wsdl_path):
            with open(wsdl_path, 'rb') as f:
                return f.read()

        cache_filename = WsdlParser.get_cache_filename(wsdl_path) if cache else None
        if cache_filename and os.path.exists(cache_filename):
            logger.debug('using cached WSDL %s for %s', cache_filename, wsdl_path)
            with open(cache_filename, 'rb') as f:
                return f.read()

        try:
            req = (session or requests).get(wsdl_path, timeout=timeout)
            req.raise_for_status()
        except requests.RequestException as e:
            raise WsdlLoadError(wsdl_path, e) from e
        raw_xml = req.content

        if cache_filename:
            with open(cache_filename, 'wb') as f:
                f.write(raw_xml)
        return raw_xml

    @staticmethod
    def get_cache_filename(wsdl):
        os.makedirs(CACHE_DIRECTORY, exist_ok=True)
        return os.path.join(CACHE_DIRECTORY, hashlib.sha1(wsdl.encode()).hexdigest())

    @staticmethod
    def parse(wsdl_path, raw_xml):
        try:
            raw_tree = XML.parse(raw_xml)
        except lxml.etree.XMLSyntaxError as e:
            raise WsdlLoadError(wsdl_path, e) from e
        return Normalizer.normalize(raw_tree)
