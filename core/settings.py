import os
from pathlib import Path
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

# --- CARGAR VARIABLES DE ENTORNO ---
# Carga el archivo .env desde la raíz del proyecto
load_dotenv(BASE_DIR / '.env')

# --- SEGURIDAD ---
SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-dev-only-cambiar-en-produccion')
DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
ALLOWED_HOSTS = [h for h in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if h]

TRUSTED_URLS = [u for u in os.getenv('TRUSTED_ORIGINS', '').split(',') if u]
CSRF_TRUSTED_ORIGINS = TRUSTED_URLS

CSRF_COOKIE_NAME = 'csrftoken'
CSRF_COOKIE_HTTPONLY = False
CSRF_COOKIE_SECURE = not DEBUG
CSRF_COOKIE_SAMESITE = 'Lax'
SESSION_COOKIE_SECURE = not DEBUG
SESSION_COOKIE_SAMESITE = 'Lax'

# -------------------------------------------------
# Apps Instaladas
# -------------------------------------------------
APPEND_SLASH = True

INSTALLED_APPS = [
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',

    'rest_framework',

    'facturacion',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
]

ROOT_URLCONF = 'core.urls'

LANGUAGE_CODE = 'es-mx'
# Las fechas del CFDI se expresan en hora local del lugar de expedición
TIME_ZONE = os.getenv('TIME_ZONE', 'America/Mexico_City')
USE_I18N = True
USE_TZ = True

# Sin modelos propios: la base solo respalda sesiones/autenticación de DRF
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.getenv('DATABASE_NAME', str(BASE_DIR / 'db.sqlite3')),
    }
}

# --- DRF ---
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# --- Celery ---
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', CELERY_BROKER_URL)
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_ALWAYS_EAGER = os.getenv('CELERY_TASK_ALWAYS_EAGER', 'False').lower() == 'true'

# --- Finkok (PAC) ---
FINKOK_USER = os.getenv('FINKOK_USER', '')
FINKOK_PASSWORD = os.getenv('FINKOK_PASSWORD', '')
FINKOK_ENVIRONMENT = os.getenv('FINKOK_ENVIRONMENT', 'demo')  # demo | production
FINKOK_TIMEOUT = int(os.getenv('FINKOK_TIMEOUT', 30))
FINKOK_SSL_VERIFY = os.getenv('FINKOK_SSL_VERIFY', 'True').lower() == 'true'

# --- CSD del emisor ---
CFDI_CSD_CER = os.getenv('CFDI_CSD_CER', '')
CFDI_CSD_KEY = os.getenv('CFDI_CSD_KEY', '')
CFDI_CSD_PASSWORD = os.getenv('CFDI_CSD_PASSWORD', '')
# True: Finkok sella con los CSD registrados (sign_stamp)
CFDI_FIRMAR_EN_PAC = os.getenv('CFDI_FIRMAR_EN_PAC', 'False').lower() == 'true'

# --- LOGGING ---
LOG_DIR = BASE_DIR / 'logs'
LOG_DIR.mkdir(exist_ok=True)

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s %(name)s %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
        'file': {
            'level': 'INFO',
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': LOG_DIR / 'facturacion.log',
            'maxBytes': 1024 * 1024 * 5,  # 5MB
            'backupCount': 5,
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'django': {
            'handlers': ['file'],
            'level': 'INFO',
            'propagate': True,
        },
        'facturacion.cfdi': {
            'handlers': ['console', 'file'],
            'level': os.getenv('CFDI_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
        'facturacion.pac': {
            'handlers': ['console', 'file'],
            'level': os.getenv('CFDI_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
        # zeep es muy verboso en DEBUG (incluye el XML con sellos)
        'zeep': {
            'handlers': ['file'],
            'level': 'WARNING',
            'propagate': False,
        },
    },
}
