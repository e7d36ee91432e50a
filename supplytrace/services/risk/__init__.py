# supplytrace/services/risk/__init__.py
