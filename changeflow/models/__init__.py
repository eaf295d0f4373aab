"""
changeflow database models.

All models share the single ``db`` instance defined here. The application
factory binds it with ``db.init_app(app)``; services receive the session
explicitly through an ``ApprovalContext`` rather than reaching for
``db.session`` themselves.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
