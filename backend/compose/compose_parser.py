"""
Docker Compose file parser.

Parses compose YAML into plain Python structures and provides "get-or-none"
accessors for the single service a managed compose file defines. Parsing
never raises: every failure is returned as an error string so the
validation pipeline can report it.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import yaml


# Dangerous YAML tags that could execute code
DANGEROUS_TAGS = [
    '!!python/object',
    '!!python/name',
    '!!python/module',
    '!!python/object/apply',
    '!!python/object/new',
]


@dataclass
class ParseResult:
    """Result of parsing compose YAML. Exactly one of document/error is set."""
    document: Optional[Dict[str, Any]]
    error: Optional[str] = None


def parse_compose_yaml(content: str) -> ParseResult:
    """
    Parse compose YAML content.

    Args:
        content: Raw YAML text

    Returns:
        ParseResult with the root mapping, or an error message when the
        content is not valid YAML or its root is not a mapping
    """
    if not isinstance(content, str):
        return ParseResult(None, 'Invalid YAML: content must be an object')

    for tag in DANGEROUS_TAGS:
        if tag in content:
            return ParseResult(
                None,
                f"Unsafe YAML tag detected: {tag}. This could execute arbitrary code."
            )

    try:
        document = yaml.safe_load(content)
    except yaml.YAMLError as e:
        return ParseResult(None, f"YAML syntax error: {e}")
    except (RecursionError, ValueError, TypeError) as e:
        return ParseResult(None, f"YAML syntax error: {e}")

    if not isinstance(document, dict):
        return ParseResult(None, 'Invalid YAML: content must be an object')

    return ParseResult(document)


def as_mapping(value: Any) -> Dict[str, Any]:
    """Return value if it is a mapping, otherwise an empty dict."""
    return value if isinstance(value, dict) else {}


def as_list(value: Any) -> List[Any]:
    """Return value if it is a sequence node, otherwise an empty list."""
    return value if isinstance(value, list) else []


def get_services(document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Return the services mapping, or None when absent or not a mapping."""
    if not isinstance(document, dict):
        return None
    services = document.get('services')
    return services if isinstance(services, dict) else None


def get_first_service(document: Optional[Dict[str, Any]]) -> Tuple[Optional[str], Dict[str, Any]]:
    """
    Return the name and body of the first service.

    A service body that is not a mapping (e.g. ``web: null``) is returned
    as an empty dict so callers can look up keys without type checks.
    """
    services = get_services(document)
    if not services:
        return None, {}
    name = next(iter(services))
    return str(name), as_mapping(services[name])


def get_container_name(document: Optional[Dict[str, Any]]) -> Optional[str]:
    """Return the first service's container_name as a string, or None."""
    _, service = get_first_service(document)
    container_name = service.get('container_name')
    if container_name is None or container_name == '':
        return None
    return str(container_name)


def _environment_to_dict(environment: Any) -> Dict[str, Any]:
    """Convert list-form (KEY=VALUE) or mapping-form environment to a dict."""
    if isinstance(environment, list):
        env_vars = {}
        for entry in environment:
            key, _, value = str(entry).partition('=')
            env_vars[key] = value
        return env_vars
    if isinstance(environment, dict):
        return {str(key): value for key, value in environment.items()}
    return {}


def extract_environment_variables(content: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """
    Extract environment variables of the first service.

    Args:
        content: Raw compose YAML

    Returns:
        Tuple of (env_vars, error). env_vars is empty when the service has
        no environment section.
    """
    parsed = parse_compose_yaml(content)
    if parsed.error:
        return None, parsed.error

    _, service = get_first_service(parsed.document)
    return _environment_to_dict(service.get('environment')), None


def update_environment_variables(
    content: str,
    new_env_vars: Dict[str, Any]
) -> Tuple[Optional[str], Optional[str]]:
    """
    Merge environment variables into the first service and re-serialize.

    List-form environments are converted to mapping form. New values win
    over existing ones; variables not mentioned are kept.

    Args:
        content: Raw compose YAML
        new_env_vars: Variables to set

    Returns:
        Tuple of (updated_content, error)
    """
    parsed = parse_compose_yaml(content)
    if parsed.error:
        return None, parsed.error

    document = parsed.document
    services = get_services(document)
    if services:
        service_name = next(iter(services))
        service = as_mapping(services[service_name])
        merged = _environment_to_dict(service.get('environment'))
        merged.update(new_env_vars)
        service['environment'] = merged
        services[service_name] = service

    try:
        updated = yaml.safe_dump(
            document,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
            width=float('inf'),  # Don't wrap lines
        )
    except yaml.YAMLError as e:
        return None, f"Failed to serialize YAML: {e}"

    return updated, None
