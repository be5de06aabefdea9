# payments/__init__.py
# PayU hosted checkout: configuration, signing, verification and reconciliation
