"""
Notificaciones por correo al equipo de operaciones.
"""
