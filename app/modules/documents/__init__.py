"""
Cola de documentos electrónicos.
"""
