"""
Document shape detection shared by the master and transaction parsers.

Tally exports arrive in three shapes:
  TAGGED   – { "tallymessage": [ { "metadata": { "type": ... }, ...lowercase fields } ] }
  ENVELOPE – { "ENVELOPE": { "BODY": { "IMPORTDATA": { "REQUESTDATA": { "TALLYMESSAGE": [...] } } } } }
  SIMPLE   – records already in the canonical shape
Detection runs once per document; each shape then has its own adapter.
"""

from enum import Enum

from tallyiq.fields import as_list


class DocumentShape(str, Enum):
    TAGGED   = 'tagged'
    ENVELOPE = 'envelope'
    SIMPLE   = 'simple'
    UNKNOWN  = 'unknown'


ENVELOPE_PATH = ('ENVELOPE', 'BODY', 'IMPORTDATA', 'REQUESTDATA', 'TALLYMESSAGE')


def tagged_messages(doc):
    """Return the type-tagged record list, or None if doc is not TAGGED."""
    if isinstance(doc, dict) and isinstance(doc.get('tallymessage'), list):
        return doc['tallymessage']
    if isinstance(doc, list) and doc and all(
        isinstance(m, dict) and isinstance(m.get('metadata'), dict) for m in doc
    ):
        return doc
    return None


def envelope_messages(doc):
    """Return the TALLYMESSAGE records, or None if doc is not an ENVELOPE."""
    node = doc
    for key in ENVELOPE_PATH:
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return [m for m in as_list(node) if isinstance(m, dict)]


def message_type(msg):
    """'Stock Item' / 'STOCKITEM' -> 'STOCKITEM'"""
    meta = msg.get('metadata')
    if not isinstance(meta, dict):
        return None
    t = meta.get('type') or meta.get('TYPE')
    if not t:
        return None
    return str(t).replace(' ', '').upper()


def message_name(msg):
    meta = msg.get('metadata')
    if isinstance(meta, dict) and meta.get('name'):
        return meta['name']
    return msg.get('name')
