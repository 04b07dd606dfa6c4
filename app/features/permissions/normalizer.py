"""
Resource and action identifiers, synonym expansion and the manage wildcard.

Resource and action keys drifted between Portuguese and English over the life
of the platform ("cliente" vs "clients", "ler" vs "read"). Every permission
check expands the requested pair into its synonyms so a grant stored under
either name matches. The tables below are explicit in both directions and are
never closed transitively: each key lists exactly the names it may stand for.
"""
import enum
from dataclasses import dataclass
from typing import Union


MANAGE = "manage"

RESOURCE_SYNONYMS: dict[str, tuple[str, ...]] = {
    "cliente": ("clients",),
    "clients": ("cliente",),
    "lead": ("leads",),
    "leads": ("lead",),
    "contato": ("contacts",),
    "contacts": ("contato",),
    "matricula": ("enrollments",),
    "enrollments": ("matricula",),
}

ACTION_SYNONYMS: dict[str, tuple[str, ...]] = {
    "ler": ("read",),
    "read": ("ler",),
    "criar": ("create",),
    "create": ("criar",),
    "atualizar": ("update",),
    "update": ("atualizar",),
    "deletar": ("delete",),
    "delete": ("deletar",),
}


class KnownResource(str, enum.Enum):
    """Resources the engine's own tables accept at administration time."""
    USERS = "users"
    INSTITUTIONS = "institutions"
    POLOS = "polos"
    COURSES = "courses"
    DISCIPLINES = "disciplines"
    ENROLLMENTS = "enrollments"
    ASSESSMENTS = "assessments"
    QUESTIONS = "questions"
    FINANCIAL_TRANSACTIONS = "financial_transactions"
    FINANCIAL_CATEGORIES = "financial_categories"
    CERTIFICATES = "certificates"
    CERTIFICATE_TEMPLATES = "certificate_templates"
    CERTIFICATE_SIGNERS = "certificate_signers"
    LEADS = "leads"
    CLIENTS = "clients"
    CONTACTS = "contacts"
    PRODUCTS = "products"
    INVOICES = "invoices"
    PAYMENTS = "payments"
    CONTRACTS = "contracts"
    CONTRACT_TEMPLATES = "contract_templates"
    ROLES = "roles"
    PERMISSIONS = "permissions"
    INTEGRATIONS = "integrations"
    REPORTS = "reports"
    DASHBOARD = "dashboard"
    SETTINGS = "settings"
    # Portuguese names still stored by older grants
    CLIENTE = "cliente"
    LEAD = "lead"
    CONTATO = "contato"
    MATRICULA = "matricula"


class KnownAction(str, enum.Enum):
    """Actions the engine's own tables accept at administration time."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE = MANAGE
    EXPORT = "export"
    CRIAR = "criar"
    LER = "ler"
    ATUALIZAR = "atualizar"
    DELETAR = "deletar"


KNOWN_RESOURCES = frozenset(member.value for member in KnownResource)
KNOWN_ACTIONS = frozenset(member.value for member in KnownAction)


@dataclass(frozen=True)
class SpecificAction:
    """A single named action such as "read"."""
    name: str


@dataclass(frozen=True)
class ManageAll:
    """Every action on the resource."""


MANAGE_ALL = ManageAll()

Action = Union[SpecificAction, ManageAll]


def parse_action(value: str) -> Action:
    """Lift a stored action string into its variant."""
    if value == MANAGE:
        return MANAGE_ALL
    return SpecificAction(value)


def action_covers(granted: Action, requested: str) -> bool:
    """
    Whether a granted action satisfies a requested one.

    ManageAll covers any requested action, including ones with no permission row.
    A specific grant covers only the same action or one of its listed synonyms.
    """
    if isinstance(granted, ManageAll):
        return True
    return granted.name in expand_action(requested)


def _ordered_unique(values) -> tuple:
    seen = set()
    ordered = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return tuple(ordered)


def expand_resource(resource: str) -> tuple[str, ...]:
    """The resource followed by its listed synonyms."""
    return _ordered_unique((resource, *RESOURCE_SYNONYMS.get(resource, ())))


def expand_action(action: str) -> tuple[str, ...]:
    """The action followed by its listed synonyms."""
    return _ordered_unique((action, *ACTION_SYNONYMS.get(action, ())))


def expand(resource: str, action: str) -> tuple[tuple[str, str], ...]:
    """
    Candidate (resource, action) pairs to try for a request, original pair first.

    Unknown identifiers with no synonym entry expand to just the original pair.

    >>> expand("cliente", "ler")
    (('cliente', 'ler'), ('cliente', 'read'), ('clients', 'ler'), ('clients', 'read'))
    """
    return _ordered_unique(
        (candidate_resource, candidate_action)
        for candidate_resource in expand_resource(resource)
        for candidate_action in expand_action(action)
    )


def is_known_resource(resource: str) -> bool:
    return resource in KNOWN_RESOURCES


def is_known_action(action: str) -> bool:
    return action in KNOWN_ACTIONS
