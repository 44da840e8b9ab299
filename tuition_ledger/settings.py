"""
Django settings for the tuition ledger project.

Environment values are read from the process environment, with a `.env`
file beside manage.py loaded first when present.
"""

import os
import sys
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

# Apps are imported as top-level packages (`from fees.models import ...`)
sys.path.insert(0, str(BASE_DIR / 'apps'))

load_dotenv(dotenv_path=BASE_DIR / '.env')


def env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'django-insecure-tuition-ledger-dev-key')

DEBUG = env_bool('DJANGO_DEBUG', False)

ALLOWED_HOSTS = [h for h in os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if h]


# =============================================================================
# APPLICATIONS
# =============================================================================

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    'utils',
    'students',
    'fees',
    'subscriptions',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',

    'utils.middleware.StaffRoleMiddleware',
    'utils.middleware.AuditContextMiddleware',
]

ROOT_URLCONF = 'tuition_ledger.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'tuition_ledger.wsgi.application'


# =============================================================================
# DATABASE
# =============================================================================

if os.environ.get('DB_NAME'):
    DATABASES = {
        'default': {
            'ENGINE': os.environ.get('DB_ENGINE', 'django.db.backends.postgresql'),
            'NAME': os.environ['DB_NAME'],
            'USER': os.environ.get('DB_USER', ''),
            'PASSWORD': os.environ.get('DB_PASSWORD', ''),
            'HOST': os.environ.get('DB_HOST', 'localhost'),
            'PORT': os.environ.get('DB_PORT', '5432'),
            'ATOMIC_REQUESTS': False,
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'


# =============================================================================
# INTERNATIONALIZATION
# =============================================================================

LANGUAGE_CODE = 'en-us'
TIME_ZONE = os.environ.get('SCHOOL_TIME_ZONE', 'Africa/Addis_Ababa')
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'


# =============================================================================
# TUITION LEDGER
# =============================================================================

TUITION_LEDGER = {
    'COMMISSIONS_ENABLED': env_bool('LEDGER_COMMISSIONS_ENABLED', True),
    'COMMISSION_RATE': os.environ.get('LEDGER_COMMISSION_RATE', '0.10'),
    'DEFAULT_CURRENCY': os.environ.get('LEDGER_DEFAULT_CURRENCY', 'ETB'),
    'AVERAGE_DAYS_PER_MONTH': int(os.environ.get('LEDGER_AVERAGE_DAYS_PER_MONTH', '30')),
    'ROUNDING_TOLERANCE': os.environ.get('LEDGER_ROUNDING_TOLERANCE', '0.01'),
    'AUTO_APPLY_DEPOSITS': env_bool('LEDGER_AUTO_APPLY_DEPOSITS', True),

    'STRIPE_SECRET_KEY': os.environ.get('STRIPE_SECRET_KEY', ''),
    'STRIPE_WEBHOOK_SECRET': os.environ.get('STRIPE_WEBHOOK_SECRET', ''),
    'CHAPA_WEBHOOK_SECRET': os.environ.get('CHAPA_WEBHOOK_SECRET', ''),
    'PROVIDER_TIMEOUT': int(os.environ.get('BILLING_PROVIDER_TIMEOUT', '15')),
    'PROVIDER_MAX_RETRIES': int(os.environ.get('BILLING_PROVIDER_MAX_RETRIES', '2')),
    'WEBHOOK_TOLERANCE': int(os.environ.get('WEBHOOK_TOLERANCE', '300')),
}


# =============================================================================
# LOGGING
# =============================================================================

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'django': {'handlers': ['console'], 'level': 'WARNING', 'propagate': False},
        'fees': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'subscriptions': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'students': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'utils': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'financial_audit': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
    },
}
