from flask import Flask
from flask_mail import Mail
from medisafe.models.base import db
from medisafe.config.config import Config

# Import all models to ensure they are registered with SQLAlchemy
from medisafe.models.user import User
from medisafe.models.device_token import DeviceToken
from medisafe.models.medication import Medication

mail = Mail()


def create_app(config_class=Config):
    app = Flask(__name__)

    # Load configuration
    app.config.from_object(config_class)

    # Initialize extensions
    db.init_app(app)
    mail.init_app(app)

    with app.app_context():
        db.create_all()

    return app
