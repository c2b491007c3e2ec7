"""Firewall policy model.

A policy is a set of named roles. Each role holds an ordered list of
allow rules and an ordered list of deny rules; hosts are assigned one
role each. Everything here is plain data plus validation: nothing in
this module touches the network.
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Optional, Sequence

from fwa.core.exceptions import ValidationError, ValidationKind
from fwa.core.validation import (
    ANY_SOURCE,
    parse_port_spec,
    sanitize_comment,
    source_network,
    validate_host_name,
    validate_source,
)


class Protocol(str, Enum):
    """Network protocol."""
    TCP = "tcp"
    UDP = "udp"


class RuleAction(str, Enum):
    """What a rule does with matching traffic."""
    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class Rule:
    """A single backend-agnostic firewall rule."""
    port: str
    protocol: Protocol = Protocol.TCP
    source: str = ANY_SOURCE
    action: RuleAction = RuleAction.ALLOW
    comment: str = ""

    @property
    def port_range(self) -> tuple[int, int]:
        """Inclusive (start, end) port pair."""
        return parse_port_spec(self.port)

    @property
    def is_range(self) -> bool:
        start, end = self.port_range
        return start != end

    @property
    def any_source(self) -> bool:
        return self.source == ANY_SOURCE

    def key(self) -> tuple[tuple[int, int], Protocol, str]:
        """Identity used for duplicate/conflict detection."""
        network = source_network(self.source)
        return self.port_range, self.protocol, str(network) if network else ANY_SOURCE

    def __str__(self) -> str:
        parts = [self.action.value, f"{self.port}/{self.protocol.value}"]
        if not self.any_source:
            parts.append(f"from {self.source}")
        return " ".join(parts)


@dataclass(frozen=True)
class Role:
    """A named bundle of allow and deny rules."""
    name: str
    allow: tuple[Rule, ...] = ()
    deny: tuple[Rule, ...] = ()

    def ordered_rules(self) -> Iterator[Rule]:
        """Allow rules then deny rules, each in declared order."""
        yield from self.allow
        yield from self.deny

    def __len__(self) -> int:
        return len(self.allow) + len(self.deny)


@dataclass(frozen=True)
class PolicySet:
    """All roles of a policy, keyed by role name."""
    roles: Mapping[str, Role] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "roles", MappingProxyType(dict(self.roles)))

    def role(self, name: str) -> Role:
        try:
            return self.roles[name]
        except KeyError:
            raise ValidationError(
                f"Unknown role: {name}",
                kind=ValidationKind.UNKNOWN_ROLE,
                role=name,
                hint=f"Defined roles: {', '.join(sorted(self.roles)) or '(none)'}",
            ) from None

    def __contains__(self, name: object) -> bool:
        return name in self.roles


@dataclass(frozen=True)
class Host:
    """A managed host from the inventory."""
    name: str
    address: str
    user: str
    role: str
    credential_ref: str = ""
    port: int = 22

    @property
    def is_root(self) -> bool:
        return self.user == "root"

    def __str__(self) -> str:
        return f"{self.name} ({self.user}@{self.address})"


@dataclass
class ValidationReport:
    """Outcome of a successful validation: non-fatal findings only."""
    warnings: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.warnings


def _default_comment(role: str, action: RuleAction, port: str, protocol: Protocol, source: str) -> str:
    return f"{role}: {action.value} {port}/{protocol.value} from {source}"


def _parse_rule(role: str, action: RuleAction, raw: Any, index: int) -> Rule:
    where = f"role '{role}' {action.value}[{index}]"

    if not isinstance(raw, Mapping):
        raise ValidationError(
            f"Rule must be a mapping in {where}",
            kind=ValidationKind.MALFORMED_RULE,
            role=role,
        )

    if "port" not in raw:
        raise ValidationError(
            f"Rule is missing 'port' in {where}",
            kind=ValidationKind.MALFORMED_PORT,
            role=role,
        )

    declared_action = raw.get("action")
    if declared_action is not None and str(declared_action).lower() != action.value:
        raise ValidationError(
            f"Rule action '{declared_action}' does not match its list in {where}",
            kind=ValidationKind.MALFORMED_RULE,
            role=role,
        )

    try:
        protocol = Protocol(str(raw.get("protocol", Protocol.TCP.value)).lower())
    except ValueError:
        raise ValidationError(
            f"Invalid protocol {raw.get('protocol')!r} in {where}",
            kind=ValidationKind.MALFORMED_RULE,
            role=role,
            hint="Valid protocols: tcp, udp",
        ) from None

    port = str(raw["port"]).strip()
    try:
        parse_port_spec(port)
        source = validate_source(str(raw.get("source", ANY_SOURCE)))
    except ValidationError as e:
        e.message = f"{e.message} in {where}"
        e.role = role
        raise

    comment = sanitize_comment(raw.get("comment")) or _default_comment(
        role, action, port, protocol, source
    )

    return Rule(port=port, protocol=protocol, source=source, action=action, comment=comment)


def _parse_rules(role: str, action: RuleAction, raw: Any) -> tuple[Rule, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, Sequence) or isinstance(raw, str):
        raise ValidationError(
            f"'{action.value}' of role '{role}' must be a list of rules",
            kind=ValidationKind.MALFORMED_RULE,
            role=role,
        )
    return tuple(_parse_rule(role, action, item, i) for i, item in enumerate(raw))


def load(raw: Mapping[str, Any]) -> PolicySet:
    """Build a PolicySet from decoded JSON/YAML.

    Accepts either ``{"roles": {...}}`` or the role mapping itself.

    Raises:
        ValidationError: If any rule is malformed or the policy conflicts
    """
    if not isinstance(raw, Mapping):
        raise ValidationError(
            "Policy must be a mapping of role names to rule lists",
            kind=ValidationKind.MALFORMED_RULE,
        )

    roles_raw = raw["roles"] if isinstance(raw.get("roles"), Mapping) else raw

    roles: dict[str, Role] = {}
    for name, body in roles_raw.items():
        name = str(name)
        if not isinstance(body, Mapping):
            raise ValidationError(
                f"Role '{name}' must be a mapping with 'allow' and/or 'deny'",
                kind=ValidationKind.MALFORMED_RULE,
                role=name,
            )
        roles[name] = Role(
            name=name,
            allow=_parse_rules(name, RuleAction.ALLOW, body.get("allow")),
            deny=_parse_rules(name, RuleAction.DENY, body.get("deny")),
        )

    policy = PolicySet(roles=roles)
    validate(policy)
    return policy


def validate(policy: PolicySet) -> ValidationReport:
    """Check policy semantics.

    Duplicates within one list are reported as warnings; the same
    port/protocol/source appearing in both allow and deny of a role is
    an error.

    Raises:
        ValidationError: MALFORMED_PORT, MALFORMED_SOURCE or
            CONFLICTING_ACTION
    """
    report = ValidationReport()

    for role in policy.roles.values():
        for rule in role.ordered_rules():
            try:
                parse_port_spec(rule.port)
                validate_source(rule.source)
            except ValidationError as e:
                e.message = f"{e.message} in role '{role.name}'"
                e.role = role.name
                raise

        allow_keys = Counter(rule.key() for rule in role.allow)
        deny_keys = Counter(rule.key() for rule in role.deny)

        conflicts = sorted(set(allow_keys) & set(deny_keys), key=str)
        if conflicts:
            raise ValidationError(
                f"Role '{role.name}' both allows and denies the same traffic",
                kind=ValidationKind.CONFLICTING_ACTION,
                role=role.name,
                hint="Remove one of the conflicting rules",
                details=[_describe_key(k) for k in conflicts],
            )

        for action, counts in ((RuleAction.ALLOW, allow_keys), (RuleAction.DENY, deny_keys)):
            for key, count in counts.items():
                if count > 1:
                    report.warnings.append(
                        f"{ValidationKind.DUPLICATE_PORT.value}: role '{role.name}' "
                        f"{action.value} lists {_describe_key(key)} {count} times"
                    )

    return report


def validate_hosts(policy: PolicySet, hosts: Sequence[Host]) -> None:
    """Check that every host is uniquely named and has a known role.

    Raises:
        ValidationError: UNKNOWN_ROLE, or a duplicate/invalid host name
    """
    seen: set[str] = set()
    for host in hosts:
        validate_host_name(host.name)
        if host.name in seen:
            raise ValidationError(f"Duplicate host name: {host.name}")
        seen.add(host.name)

        if host.role not in policy:
            raise ValidationError(
                f"Host '{host.name}' references unknown role '{host.role}'",
                kind=ValidationKind.UNKNOWN_ROLE,
                role=host.role,
                hint=f"Defined roles: {', '.join(sorted(policy.roles)) or '(none)'}",
            )


def _describe_key(key: tuple[tuple[int, int], Protocol, str]) -> str:
    (start, end), protocol, source = key
    port = str(start) if start == end else f"{start}-{end}"
    return f"{port}/{protocol.value} from {source}"


def find_role_hosts(hosts: Sequence[Host], role: Optional[str]) -> list[Host]:
    """Hosts assigned to ``role`` (all hosts when role is None)."""
    return [h for h in hosts if role is None or h.role == role]
