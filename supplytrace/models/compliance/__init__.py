# supplytrace/models/compliance/__init__.py
