import os
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager

# Global extension instances
db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()

# Label format used when an admin rotates an agreement without naming the version
VERSION_LABEL_FORMAT = os.environ.get("AGREEMENT_VERSION_LABEL_FORMAT", "%Y-%m-%d-%H-%M")
