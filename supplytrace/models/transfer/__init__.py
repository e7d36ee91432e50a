# supplytrace/models/transfer/__init__.py
