"""ledger entry guards: append-only rows and hold linkage checked on insert

Revision ID: 0002_ledger_entry_guards
Revises: 0001_marketplace
Create Date: 2026-10-12
"""

from alembic import op


revision = "0002_ledger_entry_guards"
down_revision = "0001_marketplace"
branch_labels = None
depends_on = None

# spent/unlocked resolve a `locked` hold of the same user; earned mirrors a `spent`.
CHECK_LINK_FN = """
CREATE OR REPLACE FUNCTION ledger_entries_check_link()
RETURNS trigger
LANGUAGE plpgsql
AS $$
DECLARE
    parent ledger_entries%ROWTYPE;
BEGIN
    IF NEW.type NOT IN ('spent', 'unlocked', 'earned') THEN
        IF NEW.related_entry_id IS NOT NULL THEN
            RAISE EXCEPTION '% entry % cannot reference another entry', NEW.type, NEW.id;
        END IF;
        RETURN NEW;
    END IF;

    SELECT * INTO parent FROM ledger_entries WHERE id = NEW.related_entry_id;
    IF NOT FOUND THEN
        RAISE EXCEPTION '% entry % must reference the entry it settles', NEW.type, NEW.id;
    END IF;

    IF NEW.type = 'earned' THEN
        IF parent.type <> 'spent' OR parent.amount <> -NEW.amount THEN
            RAISE EXCEPTION 'earned entry % does not mirror spent entry %', NEW.id, parent.id;
        END IF;
    ELSIF parent.type <> 'locked' OR parent.user_id <> NEW.user_id THEN
        RAISE EXCEPTION '% entry % must settle a hold of user %', NEW.type, NEW.id, NEW.user_id;
    ELSIF (NEW.type = 'spent' AND NEW.amount <> parent.amount)
        OR (NEW.type = 'unlocked' AND NEW.amount <> -parent.amount) THEN
        RAISE EXCEPTION '% entry % amount % does not match hold % of %',
            NEW.type, NEW.id, NEW.amount, parent.id, parent.amount;
    END IF;
    RETURN NEW;
END;
$$;
"""

FREEZE_FN = """
CREATE OR REPLACE FUNCTION ledger_entries_freeze()
RETURNS trigger
LANGUAGE plpgsql
AS $$
BEGIN
    RAISE EXCEPTION 'ledger_entries rows are permanent (% rejected)', TG_OP
        USING HINT = 'post a compensating entry instead';
END;
$$;
"""

TRIGGERS = {
    "trg_ledger_entries_check_link": (
        "BEFORE INSERT ON ledger_entries FOR EACH ROW EXECUTE FUNCTION ledger_entries_check_link()"
    ),
    "trg_ledger_entries_freeze_rows": (
        "BEFORE UPDATE OR DELETE ON ledger_entries FOR EACH ROW EXECUTE FUNCTION ledger_entries_freeze()"
    ),
    "trg_ledger_entries_freeze_table": (
        "BEFORE TRUNCATE ON ledger_entries FOR EACH STATEMENT EXECUTE FUNCTION ledger_entries_freeze()"
    ),
}


def upgrade() -> None:
    op.execute(CHECK_LINK_FN)
    op.execute(FREEZE_FN)
    for name, definition in TRIGGERS.items():
        op.execute(f"CREATE TRIGGER {name} {definition};")


def downgrade() -> None:
    for name in reversed(list(TRIGGERS)):
        op.execute(f"DROP TRIGGER IF EXISTS {name} ON ledger_entries;")
    op.execute("DROP FUNCTION IF EXISTS ledger_entries_freeze();")
    op.execute("DROP FUNCTION IF EXISTS ledger_entries_check_link();")
