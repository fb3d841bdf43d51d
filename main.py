# -*- coding: utf-8 -*-
# ===================================================================
# Agreement Ledger - consent versioning & audit trail
# Entry point: gunicorn "main:create_app()" or `python main.py`
# ===================================================================

import os

from agreement_ledger.extensions import db
from agreement_ledger.factory import create_app
from agreement_ledger.models import Member, AgreementVersion, AcceptanceRecord

__all__ = ["create_app", "db", "Member", "AgreementVersion", "AcceptanceRecord"]


if __name__ == '__main__':
    app = create_app()
    port = int(os.environ.get('PORT', 5001))
    debug = os.environ.get('FLASK_DEBUG', '').lower() in ('1', 'true', 'yes')
    app.run(host='0.0.0.0', port=port, debug=debug)
