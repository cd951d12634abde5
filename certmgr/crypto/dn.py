"""Distinguished name formatting and normalization."""

from cryptography import x509
from cryptography.x509.oid import NameOID, ObjectIdentifier

TYPE_ALIASES = {
    "COMMONNAME": "CN",
    "COUNTRYNAME": "C",
    "S": "ST",
    "STATEORPROVINCENAME": "ST",
    "LOCALITYNAME": "L",
    "ORGANIZATIONNAME": "O",
    "ORGANIZATIONALUNITNAME": "OU",
    "E": "EMAILADDRESS",
    "EMAIL": "EMAILADDRESS",
    "DOMAINCOMPONENT": "DC",
    "STREETADDRESS": "STREET",
    "USERID": "UID",
    "GIVENNAME": "GN",
    "SURNAME": "SN",
}

SHORT_NAMES = {
    NameOID.COMMON_NAME: "CN",
    NameOID.COUNTRY_NAME: "C",
    NameOID.STATE_OR_PROVINCE_NAME: "ST",
    NameOID.LOCALITY_NAME: "L",
    NameOID.ORGANIZATION_NAME: "O",
    NameOID.ORGANIZATIONAL_UNIT_NAME: "OU",
    NameOID.EMAIL_ADDRESS: "emailAddress",
    NameOID.DOMAIN_COMPONENT: "DC",
    NameOID.SERIAL_NUMBER: "serialNumber",
    NameOID.STREET_ADDRESS: "STREET",
    NameOID.USER_ID: "UID",
    NameOID.TITLE: "title",
    NameOID.GIVEN_NAME: "GN",
    NameOID.SURNAME: "SN",
    NameOID.POSTAL_CODE: "postalCode",
}

OIDS = {
    "CN": NameOID.COMMON_NAME,
    "C": NameOID.COUNTRY_NAME,
    "ST": NameOID.STATE_OR_PROVINCE_NAME,
    "L": NameOID.LOCALITY_NAME,
    "O": NameOID.ORGANIZATION_NAME,
    "OU": NameOID.ORGANIZATIONAL_UNIT_NAME,
    "EMAILADDRESS": NameOID.EMAIL_ADDRESS,
    "DC": NameOID.DOMAIN_COMPONENT,
    "SERIALNUMBER": NameOID.SERIAL_NUMBER,
    "STREET": NameOID.STREET_ADDRESS,
    "UID": NameOID.USER_ID,
    "TITLE": NameOID.TITLE,
    "GN": NameOID.GIVEN_NAME,
    "SN": NameOID.SURNAME,
    "POSTALCODE": NameOID.POSTAL_CODE,
}
# remaining NameOID attributes by constant name, e.g. BUSINESS_CATEGORY or BUSINESSCATEGORY
for _attr, _oid in list(vars(NameOID).items()):
    if isinstance(_oid, ObjectIdentifier) and _oid not in OIDS.values():
        OIDS.setdefault(_attr, _oid)
        OIDS.setdefault(_attr.replace("_", ""), _oid)

SUBJECT_KEYS = {
    "commonName": "CN",
    "country": "C",
    "state": "ST",
    "locality": "L",
    "organization": "O",
    "organizationalUnit": "OU",
    "email": "EMAILADDRESS",
}


def _quote(value: str) -> str:
    if any(char in value for char in ',/="+\\'):
        return '"' + value.replace('\\', '\\\\').replace('"', '\\"') + '"'
    return value


def _split(dn: str) -> tuple[list[str], str]:
    """Split on separators that are not inside quotes or escaped."""
    separator = "/" if dn.startswith("/") else ","
    parts, current, quoted, escaped = [], [], False, False
    for char in dn:
        if escaped:
            current.append(char)
            escaped = False
        elif char == "\\":
            current.append(char)
            escaped = True
        elif char == '"':
            current.append(char)
            quoted = not quoted
        elif char == separator and not quoted:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    parts.append("".join(current))
    return parts, separator


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        value = value[1:-1]
    result, escaped = [], False
    for char in value:
        if escaped:
            result.append(char)
            escaped = False
        elif char == "\\":
            escaped = True
        else:
            result.append(char)
    return "".join(result).strip()


def parse_dn(dn: str) -> list[tuple[str, str]]:
    """Parse 'CN=a, O=b' or '/CN=a/O=b' into (TYPE, value) pairs in source order."""
    components: list[list[str]] = []
    if not dn:
        return []
    parts, separator = _split(dn.strip())
    for part in parts:
        if "=" in part:
            attr_type, value = part.split("=", 1)
            attr_type = attr_type.strip().upper()
            components.append([TYPE_ALIASES.get(attr_type, attr_type), value])
        elif components and part.strip():
            # unquoted value containing the separator, e.g. O=Foo, Inc.
            components[-1][1] += separator + part
    return [(attr_type, _unquote(value)) for attr_type, value in components if attr_type]


def normalize_dn(dn: str) -> str:
    """Canonical form of a DN: uppercase types, trimmed values, sorted, 'TYPE=value, ...'."""
    components = sorted(parse_dn(dn or ""))
    return ", ".join(f"{attr_type}={_quote(value)}" for attr_type, value in components)


def dn_equal(left: str, right: str) -> bool:
    return normalize_dn(left) == normalize_dn(right)


def common_name(dn: str) -> str | None:
    for attr_type, value in parse_dn(dn or ""):
        if attr_type == "CN":
            return value
    return None


def format_name(name: x509.Name) -> str:
    """Render an x509.Name in certificate order as 'CN=a, O=b'."""
    rendered = []
    for attribute in name:
        short_name = SHORT_NAMES.get(attribute.oid) or attribute.rfc4514_attribute_name
        rendered.append(f"{short_name}={_quote(str(attribute.value))}")
    return ", ".join(rendered)


def attribute_oid(attr_type: str) -> ObjectIdentifier:
    """OID of a DN attribute type: a short name, a NameOID constant name or a dotted OID."""
    oid = OIDS.get(attr_type)
    if oid is not None:
        return oid
    if attr_type[:1].isdigit():
        return ObjectIdentifier(attr_type)
    raise ValueError(f"Unsupported distinguished name attribute: {attr_type}")


def build_name(subject, fallback_cn: str = None) -> x509.Name:
    """Build an x509.Name from a DN string or a mapping of DN fields."""
    if isinstance(subject, dict):
        pairs = []
        for key, value in subject.items():
            if value:
                pairs.append((SUBJECT_KEYS.get(key, TYPE_ALIASES.get(key.upper(), key.upper())), str(value)))
    else:
        pairs = parse_dn(subject or "")

    if not any(attr_type == "CN" for attr_type, _value in pairs) and fallback_cn:
        pairs.insert(0, ("CN", fallback_cn))

    return x509.Name([x509.NameAttribute(attribute_oid(attr_type), value) for attr_type, value in pairs])
