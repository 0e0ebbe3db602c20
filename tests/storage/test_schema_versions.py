"""Tests for schema versioning, diffing and rollback."""

from __future__ import annotations

import pytest

from tabula_ingestor.exceptions import SchemaNotFoundError
from tabula_ingestor.models.base import get_engine
from tabula_ingestor.schemas.storage import SchemaColumn, SchemaDefinition
from tabula_ingestor.storage.schema_versions import (
    SchemaVersionService,
    compare_schemas,
    generate_change_script,
)


def _col(name: str, **kwargs) -> SchemaColumn:
    return SchemaColumn(name=name, **kwargs)


V1 = [_col("id", type="integer", is_primary_key=True, is_required=True), _col("name")]
V2 = V1 + [_col("email")]
V3 = [V1[0], _col("name", is_required=True), _col("email")]


@pytest.fixture
def service() -> SchemaVersionService:
    return SchemaVersionService(get_engine())


class TestCompareSchemas:
    """Column diffing by name."""

    def test_classifies_every_column(self):
        """Columns are added, removed, modified or unchanged."""
        old = [_col("id", type="integer"), _col("name"), _col("legacy")]
        new = [_col("id", type="integer"), _col("name", is_required=True), _col("email")]

        comparison = compare_schemas(old, new)

        assert [c.name for c in comparison.added] == ["email"]
        assert [c.name for c in comparison.removed] == ["legacy"]
        assert [c.column_name for c in comparison.modified] == ["name"]
        assert [c.name for c in comparison.unchanged] == ["id"]
        assert comparison.has_changes

    def test_column_ids_are_ignored(self):
        """Two columns differing only by id are unchanged."""
        comparison = compare_schemas([_col("a", id="c1")], [_col("a", id="c2")])

        assert not comparison.has_changes


class TestChangeScript:
    """SQL rendering of a comparison."""

    def test_add_modify_remove(self):
        """Statements are grouped as add, modify then remove."""
        old = [_col("id", type="integer", is_required=True), _col("name"), _col("legacy")]
        new = [
            _col("id", type="integer", is_required=True),
            _col("name", is_required=True, default_value="'unknown'"),
            _col("email", is_required=True),
        ]

        script = generate_change_script(compare_schemas(old, new))

        assert script == (
            "-- Add column email\n"
            "ALTER TABLE data ADD COLUMN email TEXT NOT NULL;\n\n"
            "-- Modify column name\n"
            "ALTER TABLE data ALTER COLUMN name SET NOT NULL;\n"
            "ALTER TABLE data ALTER COLUMN name SET DEFAULT 'unknown';\n\n"
            "-- Remove column legacy\n"
            "ALTER TABLE data DROP COLUMN legacy;\n\n"
        )

    def test_type_change_and_dropped_default(self):
        """Type changes and removed defaults each get a statement."""
        old = [_col("score", type="integer", is_required=True, default_value=5)]
        new = [_col("score", type="numeric")]

        script = generate_change_script(compare_schemas(old, new), "scores")

        assert script == (
            "-- Modify column score\n"
            "ALTER TABLE scores ALTER COLUMN score TYPE NUMERIC;\n"
            "ALTER TABLE scores ALTER COLUMN score DROP NOT NULL;\n"
            "ALTER TABLE scores ALTER COLUMN score DROP DEFAULT;\n\n"
        )

    def test_boolean_defaults_and_unknown_types(self):
        """Booleans render lowercase and unknown types fall back to TEXT."""
        new = [_col("active", type="boolean", default_value=True), _col("blob", type="json")]

        script = generate_change_script(compare_schemas([], new))

        assert "ADD COLUMN active BOOLEAN DEFAULT true;" in script
        assert "ADD COLUMN blob TEXT;" in script

    def test_no_changes(self):
        """Identical column lists render nothing."""
        assert generate_change_script(compare_schemas(V1, V1)) == ""


class TestSchemaVersionService:
    """Persistent version history."""

    @pytest.mark.asyncio
    async def test_saving_changed_columns_appends_versions(self, service):
        """Each distinct column list becomes a new version; identical saves do not."""
        await service.save_schema(SchemaDefinition(id="customers", columns=V1), user_id="ana")
        await service.save_schema(SchemaDefinition(id="customers", columns=V1))
        saved = await service.save_schema(SchemaDefinition(id="customers", columns=V2))

        assert saved.version == 2
        versions = await service.get_schema_versions("customers")
        assert [v.version for v in versions] == [2, 1]
        assert versions[1].created_by == "ana"
        assert versions[1].change_log is None
        assert [c.name for c in versions[0].change_log.added] == ["email"]

    @pytest.mark.asyncio
    async def test_rollback_creates_a_new_version(self, service):
        """Rolling v3 back to v1 adds v4 with v1's columns and keeps v1..v3."""
        for columns in (V1, V2, V3):
            await service.save_schema(SchemaDefinition(id="customers", columns=columns))

        result = await service.rollback_schema("customers", 1, user_id="ops")

        assert result.success
        assert result.message == "Schema customers rolled back to version 1"
        assert result.schema_definition.version == 4
        assert result.schema_definition.columns == V1

        versions = await service.get_schema_versions("customers")
        assert [v.version for v in versions] == [4, 3, 2, 1]
        assert versions[0].comment == "Rollback to version 1"
        assert versions[0].created_by == "ops"
        assert [c.name for c in versions[0].change_log.removed] == ["email"]
        assert [c.column_name for c in versions[0].change_log.modified] == ["name"]
        assert (await service.get_schema_version("customers", 3)).columns == V3

        current = await service.get_schema("customers")
        assert current.version == 4
        assert current.columns == V1

    @pytest.mark.asyncio
    async def test_rollback_to_unknown_version(self, service):
        """Missing versions fail without creating anything."""
        await service.save_schema(SchemaDefinition(id="customers", columns=V1))

        result = await service.rollback_schema("customers", 9)

        assert not result.success
        assert result.message == "Version 9 not found for schema customers"
        assert (await service.get_latest_schema_version("customers")).version == 1

    @pytest.mark.asyncio
    async def test_create_schema_version_directly(self, service):
        """Versions can be appended for a schema id without a current definition."""
        first = await service.create_schema_version("orders", V1, comment="initial")
        second = await service.create_schema_version("orders", V2)

        assert (first.version, second.version) == (1, 2)
        assert first.comment == "initial"
        assert await service.get_schema("orders") is None

    @pytest.mark.asyncio
    async def test_unknown_schema(self, service):
        """Lookups of unknown schemas return None or raise when required."""
        assert await service.get_schema("nope") is None
        assert await service.get_schema_versions("nope") == []
        assert await service.get_schema_version("nope", 1) is None
        with pytest.raises(SchemaNotFoundError, match="Schema nope not found"):
            await service.require_schema("nope")
