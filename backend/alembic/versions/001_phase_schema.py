"""Phase schema: divisions, units, templates, phases, slots, rules, encounters, drawing sessions

Revision ID: 001_phase_schema
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "001_phase_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create phasetemplate table
    op.create_table(
        "phasetemplate",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("min_units", sa.Integer(), nullable=False),
        sa.Column("max_units", sa.Integer(), nullable=False),
        sa.Column("default_units", sa.Integer(), nullable=False),
        sa.Column("is_system_template", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        sa.Column("structure_json", sa.Text(), nullable=False),
        sa.Column("diagram_text", sa.Text(), nullable=True),
        sa.Column("tags", sa.String(), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_phasetemplate_name", "phasetemplate", ["name"])
    op.create_index("ix_phasetemplate_category", "phasetemplate", ["category"])

    # Create division table
    op.create_table(
        "division",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("default_best_of", sa.Integer(), nullable=True),
        sa.Column("default_score_format_id", sa.Integer(), nullable=True),
        sa.Column("applied_template_id", sa.Integer(), nullable=True),
        sa.Column("schedule_status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["applied_template_id"], ["phasetemplate.id"]),
    )
    op.create_index("ix_division_event_id", "division", ["event_id"])

    # Create unit and unitmember tables
    op.create_table(
        "unit",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("division_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["division_id"], ["division.id"]),
    )
    op.create_index("ix_unit_division_id", "unit", ["division_id"])

    op.create_table(
        "unitmember",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("unit_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("invite_status", sa.String(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["unit_id"], ["unit.id"]),
    )
    op.create_index("ix_unitmember_unit_id", "unitmember", ["unit_id"])

    # Create phase table
    op.create_table(
        "phase",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("division_id", sa.Integer(), nullable=False),
        sa.Column("template_id", sa.Integer(), nullable=True),
        sa.Column("phase_order", sa.Integer(), nullable=False),
        sa.Column("phase_type", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("incoming_slot_count", sa.Integer(), nullable=False),
        sa.Column("advancing_slot_count", sa.Integer(), nullable=False),
        sa.Column("pool_count", sa.Integer(), nullable=True),
        sa.Column("include_consolation", sa.Boolean(), nullable=False),
        sa.Column("seeded", sa.Boolean(), nullable=False),
        sa.Column("best_of", sa.Integer(), nullable=True),
        sa.Column("score_format_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["division_id"], ["division.id"]),
        sa.ForeignKeyConstraint(["template_id"], ["phasetemplate.id"]),
        sa.UniqueConstraint("division_id", "phase_order", name="uq_division_phase_order"),
    )
    op.create_index("ix_phase_division_id", "phase", ["division_id"])

    op.create_table(
        "phasepool",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("phase_id", sa.Integer(), nullable=False),
        sa.Column("pool_name", sa.String(), nullable=False),
        sa.Column("pool_order", sa.Integer(), nullable=False),
        sa.Column("slot_count", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["phase_id"], ["phase.id"]),
    )
    op.create_index("ix_phasepool_phase_id", "phasepool", ["phase_id"])

    # Slots are created before encounters; the slot -> encounter FK is added afterwards
    op.create_table(
        "phaseslot",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("phase_id", sa.Integer(), nullable=False),
        sa.Column("slot_type", sa.String(), nullable=False),
        sa.Column("slot_number", sa.Integer(), nullable=False),
        sa.Column("pool_id", sa.Integer(), nullable=True),
        sa.Column("pool_position", sa.Integer(), nullable=True),
        sa.Column("unit_id", sa.Integer(), nullable=True),
        sa.Column("source_type", sa.String(), nullable=False),
        sa.Column("source_encounter_id", sa.Integer(), nullable=True),
        sa.Column("placeholder_label", sa.String(), nullable=True),
        sa.Column("exit_label", sa.String(), nullable=True),
        sa.Column("is_resolved", sa.Boolean(), nullable=False),
        sa.Column("was_manually_resolved", sa.Boolean(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("resolution_notes", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["phase_id"], ["phase.id"]),
        sa.ForeignKeyConstraint(["pool_id"], ["phasepool.id"]),
        sa.ForeignKeyConstraint(["unit_id"], ["unit.id"]),
        sa.UniqueConstraint("phase_id", "slot_type", "slot_number", name="uq_phase_slot_number"),
    )
    op.create_index("ix_phaseslot_phase_id", "phaseslot", ["phase_id"])

    op.create_table(
        "advancementrule",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("division_id", sa.Integer(), nullable=False),
        sa.Column("source_phase_id", sa.Integer(), nullable=False),
        sa.Column("source_rank", sa.Integer(), nullable=False),
        sa.Column("source_pool_id", sa.Integer(), nullable=True),
        sa.Column("source_pool_rank", sa.Integer(), nullable=True),
        sa.Column("target_phase_id", sa.Integer(), nullable=False),
        sa.Column("target_slot_number", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("process_order", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["division_id"], ["division.id"]),
        sa.ForeignKeyConstraint(["source_phase_id"], ["phase.id"]),
        sa.ForeignKeyConstraint(["source_pool_id"], ["phasepool.id"]),
        sa.ForeignKeyConstraint(["target_phase_id"], ["phase.id"]),
        sa.UniqueConstraint("target_phase_id", "target_slot_number", name="uq_advancement_target_slot"),
    )
    op.create_index("ix_advancementrule_division_id", "advancementrule", ["division_id"])
    op.create_index("ix_advancementrule_source_phase_id", "advancementrule", ["source_phase_id"])
    op.create_index("ix_advancementrule_target_phase_id", "advancementrule", ["target_phase_id"])

    op.create_table(
        "encounter",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("division_id", sa.Integer(), nullable=False),
        sa.Column("phase_id", sa.Integer(), nullable=False),
        sa.Column("pool_id", sa.Integer(), nullable=True),
        sa.Column("encounter_number", sa.Integer(), nullable=False),
        sa.Column("label", sa.String(), nullable=False),
        sa.Column("round_number", sa.Integer(), nullable=False),
        sa.Column("round_name", sa.String(), nullable=True),
        sa.Column("bracket", sa.String(), nullable=False),
        sa.Column("bracket_position", sa.Integer(), nullable=False),
        sa.Column("slot1_id", sa.Integer(), nullable=True),
        sa.Column("slot2_id", sa.Integer(), nullable=True),
        sa.Column("source1_encounter_id", sa.Integer(), nullable=True),
        sa.Column("source1_role", sa.String(), nullable=True),
        sa.Column("source2_encounter_id", sa.Integer(), nullable=True),
        sa.Column("source2_role", sa.String(), nullable=True),
        sa.Column("side1_label", sa.String(), nullable=True),
        sa.Column("side2_label", sa.String(), nullable=True),
        sa.Column("winner_exit_rank", sa.Integer(), nullable=True),
        sa.Column("loser_exit_rank", sa.Integer(), nullable=True),
        sa.Column("unit1_id", sa.Integer(), nullable=True),
        sa.Column("unit2_id", sa.Integer(), nullable=True),
        sa.Column("winner_unit_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("best_of", sa.Integer(), nullable=True),
        sa.Column("score_format_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["division_id"], ["division.id"]),
        sa.ForeignKeyConstraint(["phase_id"], ["phase.id"]),
        sa.ForeignKeyConstraint(["pool_id"], ["phasepool.id"]),
        sa.ForeignKeyConstraint(["slot1_id"], ["phaseslot.id"]),
        sa.ForeignKeyConstraint(["slot2_id"], ["phaseslot.id"]),
        sa.ForeignKeyConstraint(["source1_encounter_id"], ["encounter.id"]),
        sa.ForeignKeyConstraint(["source2_encounter_id"], ["encounter.id"]),
        sa.ForeignKeyConstraint(["unit1_id"], ["unit.id"]),
        sa.ForeignKeyConstraint(["unit2_id"], ["unit.id"]),
        sa.ForeignKeyConstraint(["winner_unit_id"], ["unit.id"]),
    )
    op.create_index("ix_encounter_division_id", "encounter", ["division_id"])
    op.create_index("ix_encounter_phase_id", "encounter", ["phase_id"])

    with op.batch_alter_table("phaseslot") as batch_op:
        batch_op.create_foreign_key(
            "fk_phaseslot_source_encounter", "encounter", ["source_encounter_id"], ["id"]
        )

    # Drawing sessions
    op.create_table(
        "drawingsession",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("division_id", sa.Integer(), nullable=False),
        sa.Column("phase_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("total_units", sa.Integer(), nullable=False),
        sa.Column("drawn_json", sa.JSON(), nullable=False),
        sa.Column("remaining_json", sa.JSON(), nullable=False),
        sa.Column("started_by_user_id", sa.Integer(), nullable=True),
        sa.Column("started_by_name", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["division_id"], ["division.id"]),
        sa.ForeignKeyConstraint(["phase_id"], ["phase.id"]),
        sa.UniqueConstraint("division_id", name="uq_drawing_session_division"),
    )
    op.create_index("ix_drawingsession_division_id", "drawingsession", ["division_id"])

    # Match formats and per-phase game settings
    op.create_table(
        "encountermatchformat",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("division_id", sa.Integer(), nullable=False),
        sa.Column("match_order", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=True),
        sa.Column("male_count", sa.Integer(), nullable=False),
        sa.Column("female_count", sa.Integer(), nullable=False),
        sa.Column("unisex_count", sa.Integer(), nullable=False),
        sa.Column("best_of", sa.Integer(), nullable=True),
        sa.Column("score_format_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["division_id"], ["division.id"]),
    )
    op.create_index("ix_encountermatchformat_division_id", "encountermatchformat", ["division_id"])

    op.create_table(
        "phasematchsettings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("phase_id", sa.Integer(), nullable=False),
        sa.Column("match_format_id", sa.Integer(), nullable=True),
        sa.Column("best_of", sa.Integer(), nullable=True),
        sa.Column("score_format_id", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["phase_id"], ["phase.id"]),
        sa.ForeignKeyConstraint(["match_format_id"], ["encountermatchformat.id"]),
        sa.UniqueConstraint("phase_id", "match_format_id", name="uq_phase_match_format"),
    )
    op.create_index("ix_phasematchsettings_phase_id", "phasematchsettings", ["phase_id"])


def downgrade() -> None:
    op.drop_table("phasematchsettings")
    op.drop_table("encountermatchformat")
    op.drop_table("drawingsession")
    with op.batch_alter_table("phaseslot") as batch_op:
        batch_op.drop_constraint("fk_phaseslot_source_encounter", type_="foreignkey")
    op.drop_table("encounter")
    op.drop_table("advancementrule")
    op.drop_table("phaseslot")
    op.drop_table("phasepool")
    op.drop_table("phase")
    op.drop_table("unitmember")
    op.drop_table("unit")
    op.drop_table("division")
    op.drop_table("phasetemplate")
