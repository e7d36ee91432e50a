# supplytrace/models/risk/__init__.py
