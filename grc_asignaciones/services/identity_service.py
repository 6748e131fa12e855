from grc_asignaciones.models import db, Usuario, ROL_SUPERADMIN, ROL_ADMINISTRADOR, ROLES_PRIVILEGIADOS
from grc_asignaciones.errors import NotFoundError, PermissionDeniedError


class IdentityService:
    """Identity/Company directory consumed by the workflow engine."""

    @staticmethod
    def obtener_usuario(usuario_id):
        usuario = db.session.get(Usuario, usuario_id) if usuario_id else None
        if not usuario:
            raise NotFoundError("Usuario no encontrado", usuario_id=usuario_id)
        return usuario

    @staticmethod
    def es_miembro_de_empresa(usuario_id, empresa_id):
        usuario = db.session.get(Usuario, usuario_id) if usuario_id else None
        if not usuario or not usuario.activo:
            return False
        return usuario.empresa_id is not None and usuario.empresa_id == empresa_id

    @staticmethod
    def rol(usuario_id):
        return IdentityService.obtener_usuario(usuario_id).rol

    @staticmethod
    def exigir_privilegiado(actor, empresa_id):
        """
        Superadmins act on every company; administradores only on their own.
        """
        rol = IdentityService.rol(actor.id)
        if rol == ROL_SUPERADMIN:
            return
        if rol == ROL_ADMINISTRADOR and IdentityService.es_miembro_de_empresa(actor.id, empresa_id):
            return
        raise PermissionDeniedError("Solo un administrador de la empresa puede realizar esta acción")

    @staticmethod
    def exigir_superadmin(actor):
        if IdentityService.rol(actor.id) != ROL_SUPERADMIN:
            raise PermissionDeniedError("Solo un superadmin puede realizar esta acción")

    @staticmethod
    def puede_ver_empresa(actor, empresa_id):
        rol = IdentityService.rol(actor.id)
        return rol == ROL_SUPERADMIN or IdentityService.es_miembro_de_empresa(actor.id, empresa_id)

    @staticmethod
    def es_privilegiado_en(actor, empresa_id):
        rol = IdentityService.rol(actor.id)
        if rol not in ROLES_PRIVILEGIADOS:
            return False
        return rol == ROL_SUPERADMIN or IdentityService.es_miembro_de_empresa(actor.id, empresa_id)
