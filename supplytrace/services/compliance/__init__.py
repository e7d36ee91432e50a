# supplytrace/services/compliance/__init__.py
