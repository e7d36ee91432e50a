# supplytrace/services/__init__.py
