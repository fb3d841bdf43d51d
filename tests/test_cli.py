from agreement_ledger.models import AgreementVersion
from agreement_ledger.services import consent_service
from main import db, Member

from conftest import create_member


def test_create_version_command(app, tmp_path):
    agreement_file = tmp_path / "organiser.txt"
    agreement_file.write_text("Organiser Agreement from file", encoding="utf-8")
    runner = app.test_cli_runner()

    result = runner.invoke(args=[
        "agreements", "create-version",
        "--type", "organiser",
        "--version", "2026-05-01",
        "--file", str(agreement_file),
        "--description", "loaded from disk",
    ])
    assert result.exit_code == 0, result.output
    assert "ORGANISER 2026-05-01 active" in result.output

    with app.app_context():
        version = AgreementVersion.query.filter_by(agreement_type="ORGANISER", is_active=True).one()
        assert version.agreement_text == "Organiser Agreement from file"
        assert version.created_by == "cli"
        assert version.change_description == "loaded from disk"


def test_create_version_command_rejects_unknown_type(app, tmp_path):
    agreement_file = tmp_path / "x.txt"
    agreement_file.write_text("text", encoding="utf-8")
    result = app.test_cli_runner().invoke(args=[
        "agreements", "create-version", "--type", "vendor", "--file", str(agreement_file),
    ])
    assert result.exit_code != 0


def test_reconcile_command(app, versions):
    with app.app_context():
        member_id = create_member()
        member = db.session.get(Member, member_id)
        member.is_organiser = True
        db.session.commit()

    result = app.test_cli_runner().invoke(args=["agreements", "reconcile"])
    assert result.exit_code == 0, result.output
    assert f"member {member_id}: is_organiser" in result.output
    assert "Reconciled 1 member(s)." in result.output

    with app.app_context():
        assert db.session.get(Member, member_id).is_organiser is False


def test_verify_ledger_command(app, versions):
    with app.app_context():
        member_id = create_member()
        record_id = consent_service.accept_agreement("USER", member_id).id

    runner = app.test_cli_runner()
    result = runner.invoke(args=["agreements", "verify-ledger"])
    assert result.exit_code == 0
    assert "Ledger integrity verified." in result.output

    with app.app_context():
        db.session.execute(
            db.text("UPDATE legal_agreements SET agreement_hash = 'sha256_tampered' WHERE id = :id"),
            {"id": record_id},
        )
        db.session.commit()

    result = runner.invoke(args=["agreements", "verify-ledger"])
    assert result.exit_code == 1
    assert f"record {record_id}: hash mismatch" in result.output


def test_init_db_command_is_repeatable(app):
    runner = app.test_cli_runner()
    assert runner.invoke(args=["agreements", "init-db"]).exit_code == 0
    result = runner.invoke(args=["agreements", "init-db"])
    assert result.exit_code == 0
    assert "Initialized the consent tables." in result.output
