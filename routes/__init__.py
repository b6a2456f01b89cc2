from .health import health_bp
from .auth import auth_bp
from .social import social_bp
