"""workflow baseline: users, requisitions, actions, funds, budgets, bordereaux

Revision ID: 0001_workflow_baseline
Revises:
Create Date: 2026-02-20
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_workflow_baseline"
down_revision = None
branch_labels = None
depends_on = None


NIVEAUX = ("emetteur", "analyste", "challenger", "validateur", "gm", "paiement", "termine")
STATUTS = ("soumise", "en_cours", "a_corriger", "validee", "refusee", "payee", "annulee")
MODES = ("cash", "banque")


def _niveau() -> sa.Enum:
    return sa.Enum(*NIVEAUX, name="niveau_requisition", native_enum=False)


def _statut() -> sa.Enum:
    return sa.Enum(*STATUTS, name="statut_requisition", native_enum=False)


def _mode() -> sa.Enum:
    return sa.Enum(*MODES, name="mode_paiement", native_enum=False)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("nom", sa.String(length=120), nullable=True),
        sa.Column("prenom", sa.String(length=120), nullable=True),
        sa.Column("role", sa.String(length=50), nullable=False, server_default="emetteur"),
        sa.Column("service_id", sa.Uuid(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_service_id", "users", ["service_id"])

    op.create_table(
        "bordereaux",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("numero", sa.String(length=50), nullable=False),
        sa.Column("statut", sa.Enum("cree", "aligne", name="statut_bordereau", native_enum=False), nullable=False),
        sa.Column("createur_id", sa.Uuid(), nullable=True),
        sa.Column("mode_paiement", _mode(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("aligned_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_bordereaux"),
    )
    op.create_index("ix_bordereaux_numero", "bordereaux", ["numero"], unique=True)

    op.create_table(
        "requisitions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("numero", sa.String(length=50), nullable=False),
        sa.Column("objet", sa.Text(), nullable=False),
        sa.Column("montant_usd", sa.Numeric(14, 2), nullable=True),
        sa.Column("montant_cdf", sa.Numeric(14, 2), nullable=True),
        sa.Column("niveau", _niveau(), nullable=False),
        sa.Column("statut", _statut(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("emetteur_id", sa.Uuid(), nullable=True),
        sa.Column("service_id", sa.Uuid(), nullable=True),
        sa.Column("bordereau_id", sa.Integer(), nullable=True),
        sa.Column("mode_paiement", _mode(), nullable=True),
        sa.Column("related_to", sa.Uuid(), nullable=True),
        sa.Column("budget_impacted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_requisitions"),
        sa.ForeignKeyConstraint(
            ["bordereau_id"], ["bordereaux.id"], name="fk_requisitions_bordereau_id_bordereaux"
        ),
        sa.ForeignKeyConstraint(
            ["related_to"], ["requisitions.id"], name="fk_requisitions_related_to_requisitions"
        ),
        sa.CheckConstraint(
            "(COALESCE(montant_usd, 0) > 0 AND COALESCE(montant_cdf, 0) = 0)"
            " OR (COALESCE(montant_cdf, 0) > 0 AND COALESCE(montant_usd, 0) = 0)",
            name="ck_requisitions_single_currency",
        ),
    )
    op.create_index("ix_requisitions_numero", "requisitions", ["numero"], unique=True)
    op.create_index("ix_requisitions_niveau", "requisitions", ["niveau"])
    op.create_index("ix_requisitions_statut", "requisitions", ["statut"])
    op.create_index("ix_requisitions_emetteur_id", "requisitions", ["emetteur_id"])
    op.create_index("ix_requisitions_service_id", "requisitions", ["service_id"])
    op.create_index("ix_requisitions_bordereau_id", "requisitions", ["bordereau_id"])
    op.create_index("ix_requisitions_updated_at", "requisitions", ["updated_at"])

    op.create_table(
        "lignes_requisition",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("requisition_id", sa.Uuid(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rubrique", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("quantite", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("prix_unitaire", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("prix_total", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("site_id", sa.Uuid(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_lignes_requisition"),
        sa.ForeignKeyConstraint(
            ["requisition_id"],
            ["requisitions.id"],
            name="fk_lignes_requisition_requisition_id_requisitions",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_lignes_requisition_requisition_id", "lignes_requisition", ["requisition_id"])

    op.create_table(
        "requisition_actions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("requisition_id", sa.Uuid(), nullable=False),
        sa.Column("utilisateur_id", sa.Uuid(), nullable=True),
        sa.Column("action", sa.String(length=20), nullable=False),
        sa.Column("commentaire", sa.Text(), nullable=True),
        sa.Column("niveau_avant", _niveau(), nullable=False),
        sa.Column("niveau_apres", _niveau(), nullable=False),
        sa.Column("statut_avant", _statut(), nullable=False),
        sa.Column("statut_apres", _statut(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_requisition_actions"),
        sa.ForeignKeyConstraint(
            ["requisition_id"],
            ["requisitions.id"],
            name="fk_requisition_actions_requisition_id_requisitions",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_requisition_actions_requisition_id", "requisition_actions", ["requisition_id"])
    op.create_index("ix_requisition_actions_utilisateur_id", "requisition_actions", ["utilisateur_id"])

    op.create_table(
        "fonds",
        sa.Column("devise", sa.String(length=3), nullable=False),
        sa.Column("montant_disponible", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("devise", name="pk_fonds"),
        sa.CheckConstraint("montant_disponible >= 0", name="ck_fonds_solde_positif"),
    )

    op.create_table(
        "mouvements_fonds",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("type_mouvement", sa.String(length=10), nullable=False),
        sa.Column("montant", sa.Numeric(18, 2), nullable=False),
        sa.Column("devise", sa.String(length=3), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("solde_apres", sa.Numeric(18, 2), nullable=False),
        sa.Column("requisition_id", sa.Uuid(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_mouvements_fonds"),
        sa.ForeignKeyConstraint(["devise"], ["fonds.devise"], name="fk_mouvements_fonds_devise_fonds"),
        sa.CheckConstraint("montant > 0", name="ck_mouvements_fonds_montant_positif"),
        sa.CheckConstraint("type_mouvement IN ('entree', 'sortie')", name="ck_mouvements_fonds_type_mouvement"),
    )
    op.create_index("ix_mouvements_fonds_devise", "mouvements_fonds", ["devise"])
    op.create_index("ix_mouvements_fonds_requisition_id", "mouvements_fonds", ["requisition_id"])
    op.create_index("ix_mouvements_fonds_created_at", "mouvements_fonds", ["created_at"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("rubrique", sa.String(length=200), nullable=False),
        sa.Column("mois", sa.String(length=7), nullable=False),
        sa.Column("annee", sa.Integer(), nullable=False),
        sa.Column("classification", sa.String(length=50), nullable=False, server_default="NON_ALLOUE"),
        sa.Column("montant_prevu", sa.Numeric(15, 2), nullable=False, server_default="0"),
        sa.Column("montant_consomme", sa.Numeric(15, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_budgets"),
        sa.UniqueConstraint("rubrique", "mois", name="uq_budgets_rubrique_mois"),
    )
    op.create_index("ix_budgets_rubrique", "budgets", ["rubrique"])
    op.create_index("ix_budgets_mois", "budgets", ["mois"])

    op.create_table(
        "document_sequences",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("doc_type", sa.String(length=10), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("counter", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_document_sequences"),
        sa.UniqueConstraint("doc_type", "year", name="uq_doc_type_year"),
    )

    op.create_table(
        "workflow_settings",
        sa.Column("niveau", sa.String(length=30), nullable=False),
        sa.Column("delai_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("niveau", name="pk_workflow_settings"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("action", sa.String(length=120), nullable=False),
        sa.Column("entity_type", sa.String(length=120), nullable=True),
        sa.Column("entity_id", sa.String(length=120), nullable=True),
        sa.Column("old_value", sa.JSON(), nullable=True),
        sa.Column("new_value", sa.JSON(), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_audit_logs"),
    )
    op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_entity_type", "audit_logs", ["entity_type"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("workflow_settings")
    op.drop_table("document_sequences")
    op.drop_table("budgets")
    op.drop_table("mouvements_fonds")
    op.drop_table("fonds")
    op.drop_table("requisition_actions")
    op.drop_table("lignes_requisition")
    op.drop_table("requisitions")
    op.drop_table("bordereaux")
    op.drop_table("users")
