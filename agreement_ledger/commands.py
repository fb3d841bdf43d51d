# -*- coding: utf-8 -*-
"""`flask agreements ...` maintenance commands."""

import click
from flask.cli import AppGroup

from agreement_ledger.extensions import db
from agreement_ledger.legal import AgreementType
from agreement_ledger.services import acceptance_ledger, consent_service, member_state
from agreement_ledger.utils.db_bootstrap import ensure_consent_indexes
from agreement_ledger.utils.transactions import unit_of_work

agreements_cli = AppGroup("agreements", help="Agreement versions and consent ledger maintenance.")

TYPE_CHOICE = click.Choice([t.value for t in AgreementType], case_sensitive=False)


@agreements_cli.command("init-db")
def init_db_command():
    db.create_all()
    ensure_consent_indexes(db.engine)
    click.echo("Initialized the consent tables.")


@agreements_cli.command("create-version")
@click.option("--type", "agreement_type", type=TYPE_CHOICE, required=True)
@click.option("--version", "version", default=None, help="Version label; defaults to the current timestamp.")
@click.option("--file", "text_file", type=click.File("r", encoding="utf-8"), required=True)
@click.option("--created-by", default="cli")
@click.option("--description", "change_description", default=None)
def create_version_command(agreement_type, version, text_file, created_by, change_description):
    new_version = consent_service.create_version(
        agreement_type,
        version,
        text_file.read(),
        created_by,
        change_description=change_description,
    )
    click.echo(f"{new_version.agreement_type} {new_version.version} active ({new_version.agreement_hash})")


@agreements_cli.command("reconcile")
def reconcile_command():
    with unit_of_work("reconcile"):
        repaired = member_state.reconcile_all_members()
    for member_id, changed in sorted(repaired.items()):
        click.echo(f"member {member_id}: {', '.join(changed)}")
    click.echo(f"Reconciled {len(repaired)} member(s).")


@agreements_cli.command("verify-ledger")
def verify_ledger_command():
    broken = list(acceptance_ledger.scan_ledger_integrity())
    for record_id in broken:
        click.echo(f"record {record_id}: hash mismatch", err=True)
    if broken:
        raise SystemExit(1)
    click.echo("Ledger integrity verified.")
