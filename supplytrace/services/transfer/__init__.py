# supplytrace/services/transfer/__init__.py
