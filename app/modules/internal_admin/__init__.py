"""
Módulo de consola interna: operadores, auditoría y configuración de plataforma.
"""
