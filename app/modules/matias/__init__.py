"""
Integración con el proveedor de facturación electrónica MATIAS.
"""
