from medisafe.models.base import db
from medisafe.models.user import User
from medisafe.models.device_token import DeviceToken
from medisafe.models.medication import Medication

__all__ = [
    'db',
    'User',
    'DeviceToken',
    'Medication'
]
