from .db import db
from .user import User
from .session import UserSession
from .rate_limit import RateLimit
from .social_provider import SocialProvider
from .login_attempt import LoginAttempt
