# config.py


class Config:
    DEBUG = False
    TESTING = False
    SESSION_ID = "shared"                   # one session shared by every user
    MULTI_VARIANT_ONLY = True               # listing hides single-variant DFUs with no transfer
    AUDIT_TIMEZONE = "Australia/Sydney"
    MAX_CONTENT_LENGTH = 32 * 1024 * 1024


class ProductionConfig(Config):
    pass


class DevelopmentConfig(Config):
    DEBUG = True


class TestingConfig(Config):
    TESTING = True
    DEBUG = True
