"""
Paquetes, suscripciones y consumo de documentos electrónicos.
"""
