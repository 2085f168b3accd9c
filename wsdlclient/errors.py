class SoapClientError(Exception):
    pass

class WsdlLoadError(SoapClientError):
    def __init__(self, wsdl, reason):
        self.wsdl = wsdl
        self.reason = reason
        super().__init__('Could not load WSDL {}: {}'.format(wsdl, reason))

class SchemaNotFoundError(SoapClientError):
    def __init__(self, name, kind='element'):
        self.name = name
        self.kind = kind
        super().__init__('No {} named {!r} in the WSDL'.format(kind, name))

class CyclicSchemaError(SoapClientError):
    def __init__(self, chain):
        self.chain = tuple(chain)
        super().__init__('Schema references itself: {}'.format(' -> '.join(self.chain)))

class UnknownOperationError(SoapClientError):
    def __init__(self, operation):
        self.operation = operation
        super().__init__('Invalid method name: {!r}'.format(operation))

class TransportError(SoapClientError):
    def __init__(self, operation, status=None, body=None, reason=None):
        self.operation = operation
        self.status = status
        self.body = body
        self.reason = reason
        if status is None:
            message = 'SOAP call {} failed: {}'.format(operation, reason)
        else:
            message = 'SOAP call {} failed with status {}'.format(operation, status)
        super().__init__(message)

class ResponseDecodeError(SoapClientError):
    def __init__(self, message, reason):
        self.message = message
        self.reason = reason
        super().__init__('Could not decode {}: {}'.format(message, reason))
