import lxml.etree, collections, collections.abc, logging

from .errors import SchemaNotFoundError, CyclicSchemaError

logger = logging.getLogger(__name__)

WsdlModel = collections.namedtuple('WsdlModel', [
    'target_namespace',
    'target_prefixes',
    'messages',
    'operations',
    'schema_elements',
    'schema_kinds',
    'simple_types',
    'service_url',
])
Operation = collections.namedtuple('Operation', 'name input output')
Message = collections.namedtuple('Message', 'name element')
Parameter = collections.namedtuple('Parameter', 'name type min_occurs', defaults=(1,))

def one_or_many(value):
    """Return `value` as a list: collapsing turns single occurrences into bare values."""
    if value is None or value == '':
        return []
    if isinstance(value, list):
        return value
    return [value]

def resolve_prefix(node, local_name):
    key = XML.find_key(node, local_name)
    if key is None:
        raise SchemaNotFoundError(local_name, 'prefixed key')
    prefix, _, _ = key.rpartition(':')
    return prefix + ':' if prefix else ''

class XML(object):
    @staticmethod
    def parse(text):
        """Turn XML text into a nested tree of dicts and lists.

        The root is `{tag: node}`. A node without attributes and children is its
        text (or ''); otherwise it is a dict holding attributes (and namespace
        declarations) under '$', text under '_' and one list per child tag.
        """
        if isinstance(text, str):
            text = text.encode('utf-8')
        parser = lxml.etree.XMLParser(remove_comments=True, remove_pis=True, resolve_entities=False)
        root = lxml.etree.XML(text, parser=parser)
        return collections.OrderedDict([(XML.tag(root), XML.to_tree(root))])

    @staticmethod
    def to_tree(elem, parent_nsmap=None):
        parent_nsmap = parent_nsmap or {}
        attrs = collections.OrderedDict()
        for prefix, uri in elem.nsmap.items():
            if parent_nsmap.get(prefix) != uri:
                attrs['xmlns:' + prefix if prefix else 'xmlns'] = uri
        for key, value in elem.attrib.items():
            attrs[XML.qualify(key, elem.nsmap)] = value
        children = [child for child in elem if isinstance(child.tag, str)]
        text = ((elem.text or '') + ''.join(child.tail or '' for child in elem)).strip()
        if not attrs and not children:
            return text
        node = collections.OrderedDict()
        if attrs:
            node['$'] = attrs
        if text:
            node['_'] = text
        for child in children:
            node.setdefault(XML.tag(child), []).append(XML.to_tree(child, elem.nsmap))
        return node

    @staticmethod
    def tag(elem):
        local = lxml.etree.QName(elem).localname
        if elem.prefix:
            return '{}:{}'.format(elem.prefix, local)
        return local

    @staticmethod
    def qualify(name, nsmap):
        if not name.startswith('{'):
            return name
        ns, local = name[1:].split('}', 1)
        for prefix, uri in nsmap.items():
            if prefix and uri == ns:
                return '{}:{}'.format(prefix, local)
        return local

    @staticmethod
    def stripns(text):
        text = text.split('}', 1)[-1]
        return text.rsplit(':', 1)[-1]

    @staticmethod
    def find_key(node, local_name):
        if not isinstance(node, collections.abc.Mapping):
            return None
        for key in node:
            if key == local_name:
                return key
            prefix, _, local = key.rpartition(':')
            if prefix and local == local_name:
                return key
        return None

    @staticmethod
    def child(node, local_name):
        key = XML.find_key(node, local_name)
        if key is None:
            return None
        return node[key]

    @staticmethod
    def attr(node, key, bare=False):
        # collapsing leaves a node whose only attribute was `key` as a bare
        # string, either in place of the node or under '$'
        if isinstance(node, str):
            return node if bare and node else None
        if not isinstance(node, collections.abc.Mapping):
            return None
        attrs = node.get('$', node)
        if isinstance(attrs, str):
            return attrs if bare else None
        value = attrs.get(key)
        return value if isinstance(value, str) else None

    @staticmethod
    def name_of(node):
        return XML.attr(node, 'name', bare=True)

    @staticmethod
    def type_of(node):
        return XML.attr(node, 'type')

    @staticmethod
    def ref_of(node):
        ref = XML.attr(node, 'ref')
        if ref:
            return ref
        # a collapsed lone attribute is a `name` unless it is a prefixed QName
        value = XML.attr(node, 'ref', bare=True)
        if value and ':' in value:
            return value
        return None

class Normalizer(object):
    skipped_schema_children = {'$', '_', 'annotation', 'import', 'include', 'redefine'}

    @staticmethod
    def simplify(node):
        if isinstance(node, list):
            if len(node) == 1:
                return Normalizer.simplify(node[0])
            return [Normalizer.simplify(item) for item in node]
        if isinstance(node, collections.abc.Mapping):
            if len(node) == 1:
                return Normalizer.simplify(next(iter(node.values())))
            return collections.OrderedDict((k, Normalizer.simplify(v)) for k, v in node.items())
        return node

    @staticmethod
    def section(definitions, local_name):
        return definitions[resolve_prefix(definitions, local_name) + local_name]

    @staticmethod
    def normalize(raw_tree):
        raw_definitions = Normalizer.section(raw_tree, 'definitions')
        definitions = Normalizer.simplify(raw_definitions)
        if not isinstance(definitions, collections.abc.Mapping):
            raise SchemaNotFoundError('definitions', 'section')

        attrs = raw_definitions.get('$') or {}
        target_namespace = attrs.get('targetNamespace')
        if not target_namespace:
            target_namespace = next((v for k, v in attrs.items() if k.endswith('tns')), None)
        if not target_namespace:
            raise SchemaNotFoundError('targetNamespace', 'attribute')

        namespaces = {target_namespace}
        declarations = dict(attrs)
        schema_elements, schema_kinds, simple_types = [], [], set()
        for schema in Normalizer.schemas(raw_definitions):
            schema_attrs = schema.get('$') or {}
            declarations.update(schema_attrs)
            if schema_attrs.get('targetNamespace'):
                namespaces.add(schema_attrs['targetNamespace'])
            for key, value in schema.items():
                kind = XML.stripns(key)
                if key in Normalizer.skipped_schema_children or kind in Normalizer.skipped_schema_children:
                    continue
                for raw_node in value:
                    node = Normalizer.simplify(raw_node)
                    schema_elements.append(node)
                    schema_kinds.append(kind)
                    if kind == 'simpleType':
                        simple_types.add(XML.name_of(node))

        target_prefixes = frozenset(key.split(':', 1)[1] for key, value in declarations.items()
                                    if key.startswith('xmlns:') and value in namespaces)

        messages = []
        if XML.find_key(definitions, 'message') is not None:
            for message in one_or_many(Normalizer.section(definitions, 'message')):
                element = ''
                for part in one_or_many(XML.child(message, 'part')):
                    element = XML.attr(part, 'element')
                    if element:
                        # for now only allow one part per body
                        element = XML.stripns(element)
                        break
                messages.append(Message(XML.name_of(message), element or ''))

        operations = collections.OrderedDict()
        for port_type in one_or_many(Normalizer.section(definitions, 'portType')):
            for operation in one_or_many(XML.child(port_type, 'operation')):
                name = XML.name_of(operation)
                if not name or name in operations:
                    continue
                input_ = XML.attr(XML.child(operation, 'input'), 'message', bare=True) or ''
                output = XML.attr(XML.child(operation, 'output'), 'message', bare=True) or ''
                operations[name] = Operation(name, XML.stripns(input_), XML.stripns(output))

        model = WsdlModel(
            target_namespace=target_namespace,
            target_prefixes=target_prefixes or frozenset(['tns']),
            messages=tuple(messages),
            operations=tuple(operations.values()),
            schema_elements=tuple(schema_elements),
            schema_kinds=tuple(schema_kinds),
            simple_types=frozenset(simple_types),
            service_url=Normalizer.service_url(definitions),
        )
        logger.debug('normalized WSDL %s: %d operations, %d messages, %d schema nodes',
                     target_namespace, len(model.operations), len(model.messages), len(model.schema_elements))
        return model

    @staticmethod
    def schemas(raw_definitions):
        # read from the raw tree: collapsing an attribute-less <schema> would
        # merge it with its own children
        schemas = []
        for types in one_or_many(XML.child(raw_definitions, 'types')):
            for schema in one_or_many(XML.child(types, 'schema')):
                if isinstance(schema, collections.abc.Mapping):
                    schemas.append(schema)
        return schemas

    @staticmethod
    def service_url(definitions):
        if XML.find_key(definitions, 'service') is None:
            return None
        for service in one_or_many(Normalizer.section(definitions, 'service')):
            for port in one_or_many(XML.child(service, 'port')):
                location = XML.attr(XML.child(port, 'address'), 'location', bare=True)
                if location:
                    return location
        return None

class SchemaResolver(object):
    metadata = {'$', '_', 'annotation', 'documentation', 'attribute', 'anyAttribute', 'attributeGroup'}
    attributes = {'name', 'type', 'ref', 'minOccurs', 'maxOccurs', 'nillable', 'form', 'default', 'fixed',
                  'use', 'abstract', 'mixed', 'base', 'block', 'final', 'id', 'substitutionGroup',
                  'elementFormDefault', 'attributeFormDefault', 'targetNamespace'}

    def __init__(self, model):
        self.model = model
        self._messages = {message.name: message for message in model.messages}
        self._elements = {}
        self._types = {}
        for node, kind in zip(model.schema_elements, model.schema_kinds):
            index = self._elements if kind == 'element' else self._types
            index.setdefault(XML.name_of(node), node)
        self._shapes = {}

    def resolve_shape(self, message_name):
        shape = self._shapes.get(message_name)
        if shape is None:
            shape = self._resolve_message(message_name)
            self._shapes[message_name] = shape
            logger.debug('shape of %s: %s', message_name, ', '.join(p.name for p in shape) or '(empty)')
        return shape

    def _resolve_message(self, message_name):
        message = self._messages.get(message_name)
        if message is None:
            # port type names the schema element directly
            element = message_name
        elif not message.element:
            return ()
        else:
            element = message.element
        node, key = self.lookup(element, 'element')
        return tuple(self._collect(node, (key,)))

    def lookup(self, name, kind):
        first, second = (self._elements, self._types) if kind == 'element' else (self._types, self._elements)
        for index in (first, second):
            if name in index:
                return index[name], ('element' if index is self._elements else 'type', name)
        raise SchemaNotFoundError(name, kind)

    def _collect(self, node, chain):
        parameters = []
        for leaf in one_or_many(self.descend(node)):
            parameters.extend(self._collect_leaf(leaf, chain))
        return parameters

    def _collect_leaf(self, leaf, chain, min_occurs=None):
        ref = XML.ref_of(leaf)
        if ref:
            target, key = self._follow(XML.stripns(ref), 'element', chain)
            # occurrence is declared where the element is referenced
            return self._collect_leaf(target, chain + (key,), XML.attr(leaf, 'minOccurs'))
        type_ = XML.type_of(leaf) or ''
        if self.is_reference(type_):
            target, key = self._follow(XML.stripns(type_), 'type', chain)
            return self._collect(target, chain + (key,))
        if not type_ and self.descend(leaf) is not leaf:
            # anonymous complex type nested inline
            return self._collect(leaf, chain)
        name = XML.name_of(leaf)
        if not name:
            return []
        if min_occurs is None:
            min_occurs = XML.attr(leaf, 'minOccurs')
        return [Parameter(name, type_, int(min_occurs) if min_occurs else 1)]

    def _follow(self, name, kind, chain):
        target, key = self.lookup(name, kind)
        if key in chain:
            raise CyclicSchemaError([visited for _, visited in chain + (key,)])
        return target, key

    def descend(self, node):
        while isinstance(node, collections.abc.Mapping) and node and not XML.type_of(node):
            key = next((k for k in node if self.is_structural(k)), None)
            if key is None:
                break
            node = node[key]
        return node

    def is_structural(self, key):
        if key in self.attributes:
            return False
        return key not in self.metadata and XML.stripns(key) not in self.metadata

    def is_reference(self, type_):
        prefix, sep, local = type_.rpartition(':')
        if not sep or prefix not in self.model.target_prefixes:
            return False
        return local not in self.model.simple_types
