import argparse, json, logging, sys

from .client import Client
from .errors import SoapClientError, TransportError

def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog='wsdlclient', description="Call any operation of a SOAP service described by a WSDL.")
    parser.add_argument('wsdl', help="URL or path of the WSDL document.")
    parser.add_argument('--operation', help="Name of the operation to call; prompted for when omitted.")
    parser.add_argument('--param', action='append', default=[], metavar='NAME=VALUE',
                        help="Value of an input parameter; missing parameters are prompted for.")
    parser.add_argument('--typed', action='store_true', help="Convert response values using their XSD types.")
    parser.add_argument('--timeout', type=float, help="HTTP timeout in seconds.")
    parser.add_argument('--verbose', action='store_true', help="Log envelopes and resolved shapes.")
    return parser.parse_args(argv)

def parse_params(pairs):
    params = {}
    for pair in pairs:
        name, sep, value = pair.partition('=')
        if not sep:
            raise SystemExit('--param expects NAME=VALUE, got {!r}'.format(pair))
        params[name] = value
    return params

def main(argv=None, prompt=input):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s %(levelname)s %(name)s %(message)s")
    arguments = parse_params(args.param)

    try:
        client = Client(args.wsdl, timeout=args.timeout, typed=args.typed)
        print('Available SOAP Methods:')
        for operation in client.list_operations():
            print('  {} ({} -> {})'.format(operation.name, operation.input, operation.output))

        name = args.operation or prompt('Enter the name of the SOAP method you want to call: ').strip()
        for parameter in client.input_shape(name):
            if parameter.name not in arguments:
                arguments[parameter.name] = prompt("Enter value for parameter '{}' ({}): ".format(parameter.name, parameter.type))

        result = client.call(name, arguments)
    except TransportError as e:
        print('Error making SOAP request: {}'.format(e), file=sys.stderr)
        if e.body:
            print(e.body, file=sys.stderr)
        return 1
    except SoapClientError as e:
        print('Error: {}'.format(e), file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0

if __name__ == '__main__':
    sys.exit(main())
