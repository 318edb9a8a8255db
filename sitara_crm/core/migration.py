"""
Snapshot migration.

Upgrades any older snapshot shape to the current schema:
- Commission rate normalization (stale 2.5 default becomes 1)
- Broker extraction from the contacts collection
- Foreign-key remap of projects, interactions and commission payments
- Version stamp

``migrate`` is pure and idempotent: migrate(migrate(x)) == migrate(x).

``verify_broker_data`` and ``clean_up_broker_data`` check and repair broker
data that earlier releases left behind.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from .schema import (
    CURRENT_VERSION,
    DEFAULT_COMMISSION_RATE,
    LEGACY_COMMISSION_RATE,
    Snapshot,
    strip_export_metadata,
    utc_now,
)

logger = logging.getLogger(__name__)


BROKER_ID_PREFIX = 'broker_'
CUSTOMER_ID_PREFIX = 'cust_'

# Rate-bearing fields per collection
RATE_FIELDS = {
    'brokers': ('commissionRate',),
    'companyReps': ('commissionRate',),
    'projects': ('brokerCommissionRate', 'companyRepCommissionRate'),
}

SETTINGS_RATE_FIELDS = (
    'commissionRate',
    'defaultCommissionRate',
    'defaultBrokerCommission',
    'defaultCompanyRepCommission',
)

# Contact fields carried over when a broker record is built from a contact
BROKER_FIELDS_FROM_CONTACT = (
    'name', 'phone', 'cnic', 'email', 'address', 'company',
    'commissionRate', 'bankDetails', 'notes', 'status',
    'createdAt', 'updatedAt',
)


@dataclass
class MigrationContext:
    """Identifier maps built and consumed within one migration run."""
    id_map: Dict[str, str] = field(default_factory=dict)
    phone_map: Dict[str, str] = field(default_factory=dict)
    moved_ids: Set[str] = field(default_factory=set)
    brokers_created: int = 0
    contacts_linked: int = 0
    references_remapped: int = 0

    def register(self, legacy_id: Any, phone: Any, broker_id: str, moved: bool) -> None:
        if legacy_id not in (None, ''):
            self.id_map[str(legacy_id)] = broker_id
            if moved:
                self.moved_ids.add(str(legacy_id))
        phone_key = normalize_phone(phone)
        if phone_key:
            self.phone_map.setdefault(phone_key, broker_id)

    def resolve(self, legacy_id: Any = None, phone: Any = None) -> Optional[str]:
        """Map a legacy id (primary) or phone number (secondary) to a broker id."""
        if legacy_id not in (None, '') and str(legacy_id) in self.id_map:
            return self.id_map[str(legacy_id)]
        phone_key = normalize_phone(phone)
        if phone_key:
            return self.phone_map.get(phone_key)
        return None


def normalize_phone(phone: Any) -> Optional[str]:
    """Digits-only phone key, or None when there are no digits."""
    if phone is None:
        return None
    digits = re.sub(r'\D', '', str(phone))
    return digits or None


def _coerce(raw: Any) -> Optional[Dict[str, Any]]:
    if isinstance(raw, Snapshot):
        return raw.to_dict()
    data = strip_export_metadata(raw)
    return data if isinstance(data, dict) else None


def needs_migration(raw: Any) -> bool:
    """True when ``raw`` would go through the structural migration steps."""
    data = _coerce(raw)
    if data is None:
        return True
    return data.get('version') != CURRENT_VERSION or not isinstance(data.get('brokers'), list)


# ============================================
# STEP 1: RATE NORMALIZATION
# ============================================

def _is_stale_rate(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return value == LEGACY_COMMISSION_RATE
    if isinstance(value, str):
        try:
            return float(value) == LEGACY_COMMISSION_RATE
        except ValueError:
            return False
    return False


def normalize_commission_rates(snapshot: Snapshot) -> int:
    """Rewrite stale 2.5 commission rates to the current default. Returns count."""
    fixed = 0

    for collection, rate_fields in RATE_FIELDS.items():
        for record in snapshot.collection(collection):
            for rate_field in rate_fields:
                if _is_stale_rate(record.get(rate_field)):
                    record[rate_field] = DEFAULT_COMMISSION_RATE
                    fixed += 1

    for rate_field in SETTINGS_RATE_FIELDS:
        if _is_stale_rate(snapshot.settings.get(rate_field)):
            snapshot.settings[rate_field] = DEFAULT_COMMISSION_RATE
            fixed += 1

    return fixed


# ============================================
# STEP 3: ENTITY EXTRACTION
# ============================================

def _synthesize_broker_id(legacy_id: Any, taken: Set[str], position: int) -> str:
    if legacy_id in (None, ''):
        base = f"{BROKER_ID_PREFIX}legacy_{position}"
    else:
        legacy = str(legacy_id)
        if legacy.startswith(CUSTOMER_ID_PREFIX):
            legacy = legacy[len(CUSTOMER_ID_PREFIX):]
        base = f"{BROKER_ID_PREFIX}{legacy}"

    candidate = base
    suffix = 2
    while candidate in taken:
        candidate = f"{base}_{suffix}"
        suffix += 1
    return candidate


def _broker_from_contact(contact: Dict[str, Any], broker_id: str) -> Dict[str, Any]:
    broker = {k: contact[k] for k in BROKER_FIELDS_FROM_CONTACT if k in contact}
    broker['id'] = broker_id
    broker.setdefault('name', '')
    broker.setdefault('phone', '')
    broker.setdefault('cnic', '')
    broker.setdefault('status', 'active')
    broker.setdefault('commissionRate', DEFAULT_COMMISSION_RATE)
    return broker


def extract_brokers(snapshot: Snapshot, context: MigrationContext) -> None:
    """
    Split broker contacts out of the customers collection.

    - type 'broker': moved to brokers (legacy id replaced by a broker id
      unless already broker-namespaced)
    - type 'both': kept as customer, cloned into a linked broker record

    A contact whose phone matches an existing broker is mapped onto that
    broker instead of producing a duplicate.
    """
    brokers = snapshot.collection('brokers')
    taken = {str(b.get('id')) for b in brokers}
    by_id = {str(b.get('id')): b for b in brokers}
    by_phone: Dict[str, Dict[str, Any]] = {}
    for broker in brokers:
        phone_key = normalize_phone(broker.get('phone'))
        if phone_key:
            by_phone.setdefault(phone_key, broker)

    kept = []
    for position, contact in enumerate(snapshot.collection('customers')):
        kind = str(contact.get('type') or 'customer').strip().lower()
        if kind not in ('broker', 'both'):
            kept.append(contact)
            continue

        legacy_id = contact.get('id')
        phone_key = normalize_phone(contact.get('phone'))
        moved = kind == 'broker'

        broker = None
        if moved and legacy_id not in (None, '') and str(legacy_id) in by_id:
            broker = by_id[str(legacy_id)]
        elif not moved and contact.get('linkedBrokerId') and str(contact['linkedBrokerId']) in by_id:
            broker = by_id[str(contact['linkedBrokerId'])]
        elif phone_key and phone_key in by_phone:
            broker = by_phone[phone_key]

        if broker is None:
            legacy = str(legacy_id) if legacy_id not in (None, '') else ''
            if moved and legacy.startswith(BROKER_ID_PREFIX) and legacy not in taken:
                broker_id = legacy
            else:
                broker_id = _synthesize_broker_id(legacy_id, taken, position)
            broker = _broker_from_contact(contact, broker_id)
            brokers.append(broker)
            taken.add(broker_id)
            by_id[broker_id] = broker
            if phone_key:
                by_phone.setdefault(phone_key, broker)
            context.brokers_created += 1

        broker_id = str(broker['id'])
        if not moved:
            contact['linkedBrokerId'] = broker_id
            if legacy_id not in (None, ''):
                broker['linkedCustomerId'] = legacy_id
            context.contacts_linked += 1
            kept.append(contact)

        context.register(legacy_id, contact.get('phone'), broker_id, moved)

    snapshot.set_collection('customers', kept)


# ============================================
# STEP 4: FOREIGN-KEY REMAP
# ============================================

def _remap_interaction(interaction: Dict[str, Any], context: MigrationContext) -> int:
    changed = 0

    broker_ref = interaction.get('brokerId')
    if broker_ref not in (None, '') and str(broker_ref) in context.id_map:
        new_id = context.id_map[str(broker_ref)]
        if new_id != broker_ref:
            interaction['brokerId'] = new_id
            changed += 1

    customer_ref = interaction.get('customerId')
    if customer_ref not in (None, ''):
        addressed_as_broker = (
            str(customer_ref) in context.moved_ids
            or (interaction.get('contactType') == 'broker' and str(customer_ref) in context.id_map)
        )
        if addressed_as_broker:
            interaction['brokerId'] = interaction.get('brokerId') or context.id_map[str(customer_ref)]
            interaction['customerId'] = None
            interaction['contactType'] = 'broker'
            changed += 1

    contacts = interaction.get('contacts')
    if isinstance(contacts, list):
        for entry in contacts:
            if not isinstance(entry, dict):
                continue
            entry_id = entry.get('id')
            is_moved = entry_id not in (None, '') and str(entry_id) in context.moved_ids
            if not is_moved and entry.get('type') != 'broker':
                continue
            new_id = context.resolve(entry_id, entry.get('phone'))
            if new_id and new_id != entry_id:
                entry['id'] = new_id
                entry['type'] = 'broker'
                changed += 1

    return changed


def remap_foreign_keys(snapshot: Snapshot, context: MigrationContext) -> int:
    """Rewrite broker references through the migration maps. Returns count."""
    if not context.id_map and not context.phone_map:
        return 0

    remapped = 0

    for project in snapshot.collection('projects'):
        ref = project.get('brokerId')
        new_id = context.resolve(ref) if ref not in (None, '') else None
        if new_id and new_id != ref:
            project['brokerId'] = new_id
            remapped += 1

    for interaction in snapshot.collection('interactions'):
        remapped += _remap_interaction(interaction, context)

    for payment in snapshot.collection('commissionPayments'):
        if payment.get('recipientType', 'broker') != 'broker':
            continue
        ref = payment.get('recipientId')
        new_id = context.resolve(ref) if ref not in (None, '') else None
        if new_id and new_id != ref:
            payment['recipientId'] = new_id
            remapped += 1

    context.references_remapped += remapped
    return remapped


# ============================================
# ENTRY POINT
# ============================================

def migrate(raw: Any, now: Optional[str] = None) -> Snapshot:
    """
    Upgrade any snapshot shape to the current schema.

    Args:
        raw: Stored/imported payload (dict, Snapshot, or anything else)
        now: Timestamp to stamp on structurally migrated snapshots
             (defaults to the current UTC time)

    Returns:
        Current-version Snapshot. Malformed input yields an empty one.
    """
    data = _coerce(raw)
    if data is None:
        logger.warning(f"Cannot migrate non-object payload ({type(raw).__name__}), using empty snapshot")
        return Snapshot()

    if not needs_migration(data):
        snapshot = Snapshot.from_dict(data)
        fixed = normalize_commission_rates(snapshot)
        if fixed:
            logger.info(f"Normalized {fixed} stale commission rates")
        return snapshot

    from_version = data.get('version') or 'unversioned'
    snapshot = Snapshot.from_dict(data)
    context = MigrationContext()

    extract_brokers(snapshot, context)
    remap_foreign_keys(snapshot, context)

    snapshot.version = CURRENT_VERSION
    snapshot.last_updated = now or utc_now()

    fixed = normalize_commission_rates(snapshot)

    logger.info(
        f"Migrated snapshot {from_version} -> {CURRENT_VERSION}: "
        f"{context.brokers_created} brokers created, {context.contacts_linked} contacts linked, "
        f"{context.references_remapped} references remapped, {fixed} rates normalized"
    )
    return snapshot


# ============================================
# BROKER DATA INTEGRITY
# ============================================

@dataclass
class BrokerDataIssue:
    """One inconsistency found by ``verify_broker_data``."""
    type: str  # 'orphaned', 'duplicate' or 'reference'
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type, 'message': self.message, 'data': self.data}


@dataclass
class BrokerDataReport:
    """Result of a broker data consistency check."""
    issues: List[BrokerDataIssue] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.issues

    def by_type(self, issue_type: str) -> List[BrokerDataIssue]:
        return [issue for issue in self.issues if issue.type == issue_type]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'consistent': self.consistent,
            'issues': [issue.to_dict() for issue in self.issues],
        }


def verify_broker_data(snapshot: Snapshot) -> BrokerDataReport:
    """
    Check broker data left behind by earlier releases or partial migrations.

    Three checks:
    - orphaned: contact still typed 'broker' with no broker record behind it
    - duplicate: several brokers share one phone number
    - reference: project brokerId pointing at no broker

    The snapshot is not modified.
    """
    report = BrokerDataReport()
    brokers = snapshot.collection('brokers')
    broker_ids = {str(b.get('id')) for b in brokers if b.get('id') not in (None, '')}
    broker_phones = {normalize_phone(b.get('phone')) for b in brokers} - {None}

    for contact in snapshot.collection('customers'):
        if str(contact.get('type') or '').strip().lower() != 'broker':
            continue
        linked = contact.get('linkedBrokerId')
        if normalize_phone(contact.get('phone')) in broker_phones or (linked and str(linked) in broker_ids):
            continue
        report.issues.append(BrokerDataIssue(
            'orphaned',
            f"Contact {contact.get('id')} is marked as broker but has no broker record",
            {'customerId': contact.get('id'), 'name': contact.get('name')},
        ))

    seen: Dict[str, Any] = {}
    for broker in brokers:
        phone_key = normalize_phone(broker.get('phone'))
        if not phone_key:
            continue
        if phone_key in seen:
            report.issues.append(BrokerDataIssue(
                'duplicate',
                f"Brokers {seen[phone_key]} and {broker.get('id')} share phone {broker.get('phone')}",
                {'phone': broker.get('phone'), 'brokerIds': [seen[phone_key], broker.get('id')]},
            ))
        else:
            seen[phone_key] = broker.get('id')

    for project in snapshot.collection('projects'):
        ref = project.get('brokerId')
        if ref in (None, '') or str(ref) in broker_ids:
            continue
        report.issues.append(BrokerDataIssue(
            'reference',
            f"Project {project.get('id')} references unknown broker {ref}",
            {'projectId': project.get('id'), 'brokerId': ref},
        ))

    if report.issues:
        logger.warning(f"Broker data check found {len(report.issues)} issues")
    return report


def clean_up_broker_data(raw: Any) -> Tuple[Snapshot, MigrationContext]:
    """
    Re-run broker extraction and reference remapping on a snapshot of any
    version, for contacts that are still typed 'broker' after migration.

    Returns:
        (cleaned snapshot, context with the counts of what changed)
    """
    snapshot = migrate(raw)
    context = MigrationContext()
    extract_brokers(snapshot, context)
    remap_foreign_keys(snapshot, context)

    logger.info(
        f"Broker cleanup: {context.brokers_created} brokers created, "
        f"{context.contacts_linked} contacts linked, {context.references_remapped} references remapped"
    )
    return snapshot, context
