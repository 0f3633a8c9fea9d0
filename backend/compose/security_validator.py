"""
Security policy for single-service compose files

Validates the service configuration before anything touches the host:
- Privileged containers (blocked)
- Host network / host PID namespaces (blocked)
- Bind mounts of sensitive host paths (docker.sock, root filesystem, system directories) (blocked)
- Elevated Linux capabilities (warning)
- Disabled AppArmor/seccomp profiles (warning)

Blocking violations fail validation. Warnings are surfaced to the operator
but allow deployment, since some game servers legitimately need extra
capabilities.

Usage:
    validator = SecurityValidator()
    result = validator.check_security(document)

    if not result.ok:
        print("\\n".join(result.errors))
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import logging
import posixpath

from .compose_parser import as_list, as_mapping, get_services

logger = logging.getLogger(__name__)


class SecurityLevel(Enum):
    """
    Security violation severity levels.

    Levels:
        CRITICAL (2): Blocks deployment
        WARNING (1): Reported to the operator, deployment allowed
    """
    CRITICAL = 2
    WARNING = 1


@dataclass
class SecurityViolation:
    """
    Represents a security violation found during validation.

    Attributes:
        level: Severity level of the violation
        field: Service key that triggered the violation
        message: Human-readable description of the violation
    """
    level: SecurityLevel
    field: str
    message: str


@dataclass
class SecurityResult:
    """Outcome of the security policy check."""
    ok: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class SecurityValidator:
    """
    Validates compose service configurations against the host security policy.
    """

    # Host paths that must never be bind mounted (the path itself or anything below it)
    FORBIDDEN_MOUNT_PATHS = (
        '/',
        '/etc',
        '/var/run/docker.sock',
        '/root',
        '/home',
        '/usr',
        '/bin',
        '/sbin',
        '/lib',
        '/lib64',
        '/boot',
        '/proc',
        '/sys',
        '/dev',
    )

    # Capabilities that trigger warnings (but are allowed)
    WARNED_CAPABILITIES = (
        'SYS_ADMIN',
        'NET_ADMIN',
        'SYS_PTRACE',
        'SYS_RAWIO',
        'SYS_MODULE',
    )

    UNCONFINED_SECURITY_OPTS = (
        'apparmor:unconfined',
        'apparmor=unconfined',
        'seccomp:unconfined',
        'seccomp=unconfined',
    )

    def check_security(self, document: Dict[str, Any]) -> SecurityResult:
        """
        Check every service in a structurally valid compose document.

        Args:
            document: Parsed compose document

        Returns:
            SecurityResult with blocking errors and non-blocking warnings
        """
        violations = []
        for service_name, service in (get_services(document) or {}).items():
            violations.extend(self.validate_service(str(service_name), as_mapping(service)))

        errors = [v.message for v in violations if v.level == SecurityLevel.CRITICAL]
        warnings = [v.message for v in violations if v.level == SecurityLevel.WARNING]

        if errors:
            logger.info(f"Compose security check blocked {len(errors)} setting(s)")

        return SecurityResult(ok=not self.has_blocking_violations(violations), errors=errors, warnings=warnings)

    def validate_service(self, service_name: str, service: Dict[str, Any]) -> List[SecurityViolation]:
        """
        Validate one service configuration.

        Examples:
            >>> validator = SecurityValidator()
            >>> violations = validator.validate_service("web", {"privileged": True})
            >>> violations[0].level is SecurityLevel.CRITICAL
            True
        """
        violations = []
        violations.extend(self._check_privileged(service_name, service))
        violations.extend(self._check_namespaces(service_name, service))
        violations.extend(self._check_volume_mounts(service_name, service))
        violations.extend(self._check_capabilities(service_name, service))
        violations.extend(self._check_security_opts(service_name, service))
        return violations

    def _check_privileged(self, service_name: str, service: Dict[str, Any]) -> List[SecurityViolation]:
        """Check for privileged container flag."""
        if service.get('privileged') is True:
            return [SecurityViolation(
                level=SecurityLevel.CRITICAL,
                field='privileged',
                message=f'Service "{service_name}": privileged mode is not allowed'
            )]
        return []

    def _check_namespaces(self, service_name: str, service: Dict[str, Any]) -> List[SecurityViolation]:
        """Check for host network and host PID namespaces."""
        violations = []

        if service.get('network_mode') == 'host':
            violations.append(SecurityViolation(
                level=SecurityLevel.CRITICAL,
                field='network_mode',
                message=f'Service "{service_name}": host network mode is not allowed'
            ))

        if service.get('pid') == 'host':
            violations.append(SecurityViolation(
                level=SecurityLevel.CRITICAL,
                field='pid',
                message=f'Service "{service_name}": host PID mode is not allowed'
            ))

        return violations

    def _check_volume_mounts(self, service_name: str, service: Dict[str, Any]) -> List[SecurityViolation]:
        """Check bind mounts against the forbidden host paths."""
        violations = []

        # Short syntax: "/host:/container[:mode]"
        # Long syntax: {type: bind, source: /host, target: /container}
        for volume in as_list(service.get('volumes')):
            host_path = self.get_host_path(volume)
            if not host_path:
                continue

            forbidden = self.match_forbidden_path(host_path)
            if forbidden is None:
                continue

            if forbidden == '/':
                message = f'Service "{service_name}": mounting root filesystem "/" is not allowed'
            else:
                message = f'Service "{service_name}": mounting "{host_path}" is not allowed for security reasons'

            violations.append(SecurityViolation(
                level=SecurityLevel.CRITICAL,
                field='volumes',
                message=message
            ))

        return violations

    @staticmethod
    def get_host_path(volume: Any) -> str:
        """Extract the host side of a volume entry ('' when there is none)."""
        if isinstance(volume, str):
            return volume.split(':', 1)[0]
        if isinstance(volume, dict):
            source = volume.get('source')
            return source if isinstance(source, str) else ''
        return ''

    def match_forbidden_path(self, host_path: str) -> Optional[str]:
        """
        Return the forbidden path a host path falls under, or None.

        Matching is segment-bounded: '/etc' matches '/etc' and '/etc/nginx'
        but not '/etcetera'. The root path only matches itself, so ordinary
        absolute bind mounts such as '/srv/minecraft' stay allowed. Relative
        paths and named volumes never match.

        Examples:
            >>> SecurityValidator().match_forbidden_path('/etc/nginx')
            '/etc'
            >>> SecurityValidator().match_forbidden_path('/etcetera') is None
            True
        """
        if not host_path.startswith('/'):
            return None

        normalized = posixpath.normpath(host_path)
        # normpath keeps a leading '//' (POSIX allows it to be special)
        if normalized.startswith('//'):
            normalized = '/' + normalized.lstrip('/')

        if normalized == '/':
            return '/'

        for forbidden in self.FORBIDDEN_MOUNT_PATHS:
            if forbidden == '/':
                continue
            if normalized == forbidden or normalized.startswith(forbidden + '/'):
                return forbidden

        return None

    def _check_capabilities(self, service_name: str, service: Dict[str, Any]) -> List[SecurityViolation]:
        """Check for elevated Linux capabilities."""
        violations = []

        for capability in as_list(service.get('cap_add')):
            if not isinstance(capability, str):
                continue

            # Normalize capability name (remove CAP_ prefix if present)
            cap_name = capability.upper()
            if cap_name.startswith('CAP_'):
                cap_name = cap_name[len('CAP_'):]

            if cap_name in self.WARNED_CAPABILITIES:
                violations.append(SecurityViolation(
                    level=SecurityLevel.WARNING,
                    field='cap_add',
                    message=f'Service "{service_name}": capability "{cap_name}" added - this grants elevated permissions'
                ))

        return violations

    def _check_security_opts(self, service_name: str, service: Dict[str, Any]) -> List[SecurityViolation]:
        """Check for security_opt entries that disable confinement."""
        violations = []

        for opt in as_list(service.get('security_opt')):
            if not isinstance(opt, str):
                continue
            if any(unconfined in opt for unconfined in self.UNCONFINED_SECURITY_OPTS):
                violations.append(SecurityViolation(
                    level=SecurityLevel.WARNING,
                    field='security_opt',
                    message=f'Service "{service_name}": security profiles disabled - container has reduced isolation'
                ))

        return violations

    def has_blocking_violations(self, violations: List[SecurityViolation]) -> bool:
        """
        Check if violations contain CRITICAL level issues that should block deployment.

        Examples:
            >>> validator = SecurityValidator()
            >>> validator.has_blocking_violations([SecurityViolation(SecurityLevel.WARNING, 'cap_add', 'msg')])
            False
        """
        return any(v.level == SecurityLevel.CRITICAL for v in violations)


def check_security(document: Dict[str, Any]) -> SecurityResult:
    """Run the default security policy against a compose document."""
    return SecurityValidator().check_security(document)
