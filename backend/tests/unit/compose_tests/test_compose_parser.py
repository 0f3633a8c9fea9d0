"""
Unit tests for compose YAML parsing and environment helpers.

Tests cover:
- Parse results for valid, malformed and non-mapping YAML
- Rejection of unsafe python tags
- Get-or-none service accessors
- Environment variable extraction and merge
"""

import pytest
import yaml

from compose.compose_parser import (
    extract_environment_variables,
    get_container_name,
    get_first_service,
    get_services,
    parse_compose_yaml,
    update_environment_variables,
)


class TestParseComposeYaml:
    """Test parse_compose_yaml result contract"""

    def test_valid_mapping(self):
        """Should return the document and no error"""
        result = parse_compose_yaml("services:\n  web:\n    image: nginx\n")

        assert result.error is None
        assert result.document == {'services': {'web': {'image': 'nginx'}}}

    def test_syntax_error_is_returned(self):
        """Should return parser diagnostics instead of raising"""
        result = parse_compose_yaml("services:\n  web: [unclosed\n")

        assert result.document is None
        assert result.error.startswith("YAML syntax error:")

    @pytest.mark.parametrize("content", ["just a string", "- a\n- b\n", "42", ""])
    def test_non_mapping_root(self, content):
        """Scalars, lists and empty documents are not compose files"""
        result = parse_compose_yaml(content)

        assert result.document is None
        assert "must be an object" in result.error

    def test_empty_mapping_root(self):
        """An empty mapping parses; the missing services section is a structure error"""
        result = parse_compose_yaml("{}")

        assert result.error is None
        assert result.document == {}

    def test_rejects_python_tags(self):
        """Should reject python object tags before loading"""
        content = "services:\n  web:\n    image: !!python/object/apply:os.system ['echo hacked']\n"

        result = parse_compose_yaml(content)

        assert result.document is None
        assert "Unsafe YAML tag detected" in result.error

    def test_non_string_input(self):
        """Should not raise for non-string input"""
        result = parse_compose_yaml(None)

        assert result.document is None
        assert result.error is not None


class TestServiceAccessors:
    """Test get-or-none accessors"""

    def test_get_services_missing(self):
        assert get_services({'version': '3'}) is None

    def test_get_services_not_mapping(self):
        assert get_services({'services': ['web']}) is None

    def test_first_service_null_body(self):
        """A null service body is treated as an empty mapping"""
        name, service = get_first_service({'services': {'web': None}})

        assert name == 'web'
        assert service == {}

    def test_container_name_coerced_to_string(self):
        document = {'services': {'web': {'container_name': 1234}}}

        assert get_container_name(document) == '1234'

    def test_container_name_absent(self):
        assert get_container_name({'services': {'web': {'image': 'nginx'}}}) is None


class TestEnvironmentVariables:
    """Test extract/update of the first service's environment"""

    def test_extract_mapping_form(self):
        content = "services:\n  web:\n    image: nginx\n    environment:\n      A: '1'\n      B: two\n"

        env, error = extract_environment_variables(content)

        assert error is None
        assert env == {'A': '1', 'B': 'two'}

    def test_extract_list_form(self):
        content = "services:\n  web:\n    image: nginx\n    environment:\n      - A=1\n      - B=x=y\n      - EMPTY\n"

        env, error = extract_environment_variables(content)

        assert error is None
        assert env == {'A': '1', 'B': 'x=y', 'EMPTY': ''}

    def test_extract_no_environment(self):
        env, error = extract_environment_variables("services:\n  web:\n    image: nginx\n")

        assert error is None
        assert env == {}

    def test_extract_invalid_yaml(self):
        env, error = extract_environment_variables("services: [")

        assert env is None
        assert error is not None

    def test_update_round_trip(self):
        """Updated values win and new values are added"""
        content = "services:\n  web:\n    image: nginx\n    environment:\n      VAR1: old\n"

        updated, error = update_environment_variables(content, {'VAR1': 'new', 'VAR2': 'added'})
        assert error is None

        env, error = extract_environment_variables(updated)
        assert error is None
        assert env == {'VAR1': 'new', 'VAR2': 'added'}

    def test_update_converts_list_form(self):
        content = "services:\n  web:\n    image: nginx\n    environment:\n      - KEEP=1\n"

        updated, error = update_environment_variables(content, {'NEW': '2'})

        assert error is None
        document = yaml.safe_load(updated)
        assert document['services']['web']['environment'] == {'KEEP': '1', 'NEW': '2'}

    def test_update_preserves_other_keys(self):
        content = "services:\n  web:\n    image: nginx\n    container_name: web-1\n"

        updated, error = update_environment_variables(content, {'A': 'b'})

        assert error is None
        document = yaml.safe_load(updated)
        assert document['services']['web']['image'] == 'nginx'
        assert document['services']['web']['container_name'] == 'web-1'
        assert list(document['services']['web']) == ['image', 'container_name', 'environment']
