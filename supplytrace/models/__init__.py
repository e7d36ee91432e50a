# supplytrace/models/__init__.py
