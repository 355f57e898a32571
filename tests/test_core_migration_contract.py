from __future__ import annotations

from pathlib import Path


def test_core_migration_declares_tables_and_unique_indexes() -> None:
    migration_path = Path("migrations/versions/20261017_0001_openpolicy_core.py")
    source = migration_path.read_text(encoding="utf-8")

    for table in ("workspaces", "pending_workspaces", "documents", "billing_events"):
        assert f'"{table}"' in source

    assert "uq_workspaces_slug_lower" in source
    assert "uq_workspaces_custom_domain" in source
    assert "uq_documents_workspace_slug_lower" in source
    assert "uq_billing_events_event_id" in source
    assert "usage_revision" in source
    assert "def downgrade" in source
