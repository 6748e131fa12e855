from datetime import datetime, timezone
from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
import uuid

def get_now():
    """Naive UTC timestamp (all DateTime columns are stored in UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def get_today():
    return get_now().date()

def new_uuid():
    return str(uuid.uuid4())

db = SQLAlchemy()

# Enums (plain strings, same values the API exposes)
ROL_SUPERADMIN = 'superadmin'
ROL_ADMINISTRADOR = 'administrador'
ROL_USUARIO = 'usuario'
ROLES_PRIVILEGIADOS = (ROL_SUPERADMIN, ROL_ADMINISTRADOR)

ESTADO_PENDIENTE = 'pendiente'
ESTADO_EN_PROGRESO = 'en_progreso'
ESTADO_COMPLETADO = 'completado'
ESTADO_PENDIENTE_REVISION = 'pendiente_revision'
ESTADO_RECHAZADO = 'rechazado'
ESTADO_VENCIDO = 'vencido' # display only, never stored

ESTADOS_ASIGNACION = (
    ESTADO_PENDIENTE, ESTADO_EN_PROGRESO, ESTADO_COMPLETADO,
    ESTADO_PENDIENTE_REVISION, ESTADO_RECHAZADO,
)
# States in which the deadline flag is meaningful
ESTADOS_CON_PLAZO = (ESTADO_PENDIENTE, ESTADO_EN_PROGRESO, ESTADO_PENDIENTE_REVISION)

REVISION_APROBADO = 'aprobado'
REVISION_RECHAZADO = 'rechazado'
REVISION_REABIERTA = 'reabierta'

EVALUACION_ACTIVA = 'activa'
EVALUACION_EN_PROGRESO = 'en_progreso'
EVALUACION_COMPLETADA = 'completada'
EVALUACION_VENCIDA = 'vencida'
EVALUACION_CANCELADA = 'cancelada'


class Empresa(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    nombre = db.Column(db.String(200), nullable=False)
    ruc = db.Column(db.String(20), unique=True, nullable=True)
    activo = db.Column(db.Boolean, default=True, nullable=False)
    fecha_creacion = db.Column(db.DateTime, default=get_now)

    usuarios = db.relationship('Usuario', backref='empresa', lazy=True)


class Usuario(UserMixin, db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    empresa_id = db.Column(db.String(36), db.ForeignKey('empresa.id'), nullable=True) # Null for superadmin
    nombre_completo = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    rol = db.Column(db.String(20), nullable=False, default=ROL_USUARIO)
    activo = db.Column(db.Boolean, default=True, nullable=False)
    fecha_creacion = db.Column(db.DateTime, default=get_now)

    @property
    def is_active(self):
        return bool(self.activo)

    @property
    def es_superadmin(self):
        return self.rol == ROL_SUPERADMIN

    @property
    def es_privilegiado(self):
        return self.rol in ROLES_PRIVILEGIADOS


class Encuesta(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    nombre = db.Column(db.String(300), nullable=False)
    version = db.Column(db.String(20), default='1.0')
    activo = db.Column(db.Boolean, default=True, nullable=False)
    fecha_creacion = db.Column(db.DateTime, default=get_now)

    dimensiones = db.relationship('Dimension', backref='encuesta', lazy=True, order_by='Dimension.orden')


class Dimension(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    encuesta_id = db.Column(db.String(36), db.ForeignKey('encuesta.id'), nullable=False)
    codigo = db.Column(db.String(20), nullable=False)
    nombre = db.Column(db.String(200), nullable=False)
    orden = db.Column(db.Integer, default=0)
    activo = db.Column(db.Boolean, default=True, nullable=False)

    preguntas = db.relationship('Pregunta', backref='dimension', lazy=True, order_by='Pregunta.orden')

    __table_args__ = (db.UniqueConstraint('encuesta_id', 'codigo', name='uq_dimension_codigo'),)


class Pregunta(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    dimension_id = db.Column(db.String(36), db.ForeignKey('dimension.id'), nullable=False)
    codigo = db.Column(db.String(50), nullable=False)
    texto = db.Column(db.Text, nullable=False)
    orden = db.Column(db.Integer, default=0)
    activo = db.Column(db.Boolean, default=True, nullable=False)


class EvaluacionEmpresa(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    encuesta_id = db.Column(db.String(36), db.ForeignKey('encuesta.id'), nullable=False)
    empresa_id = db.Column(db.String(36), db.ForeignKey('empresa.id'), nullable=False)
    administrador_id = db.Column(db.String(36), db.ForeignKey('usuario.id'), nullable=True)
    asignado_por_id = db.Column(db.String(36), db.ForeignKey('usuario.id'), nullable=True)

    fecha_asignacion = db.Column(db.DateTime, default=get_now)
    fecha_limite = db.Column(db.Date, nullable=False)
    fecha_completado = db.Column(db.DateTime, nullable=True)

    estado = db.Column(db.String(20), default=EVALUACION_ACTIVA, nullable=False)
    observaciones = db.Column(db.Text, default='')

    # Derived by ProgresoService, never hand-set
    total_dimensiones = db.Column(db.Integer, default=0, nullable=False)
    dimensiones_asignadas = db.Column(db.Integer, default=0, nullable=False)
    dimensiones_completadas = db.Column(db.Integer, default=0, nullable=False)
    porcentaje_avance = db.Column(db.Float, default=0.0, nullable=False)

    activo = db.Column(db.Boolean, default=True, nullable=False)
    fecha_creacion = db.Column(db.DateTime, default=get_now)
    fecha_actualizacion = db.Column(db.DateTime, default=get_now, onupdate=get_now)

    encuesta = db.relationship('Encuesta')
    empresa = db.relationship('Empresa')
    administrador = db.relationship('Usuario', foreign_keys=[administrador_id])
    asignado_por = db.relationship('Usuario', foreign_keys=[asignado_por_id])

    @property
    def esta_vencida(self):
        if self.estado in (EVALUACION_COMPLETADA, EVALUACION_CANCELADA):
            return False
        return get_today() > self.fecha_limite

    @property
    def estado_display(self):
        return EVALUACION_VENCIDA if self.esta_vencida else self.estado

    @property
    def dias_restantes(self):
        if self.estado == EVALUACION_COMPLETADA:
            return 0
        return (self.fecha_limite - get_today()).days


class Asignacion(db.Model):
    """
    A unit of assignable work.

    - dimension_id set: one dimension handed to a user (administrador -> usuario)
    - dimension_id NULL: the whole survey handed to an administrador (superadmin -> administrador)
    """
    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    evaluacion_id = db.Column(db.String(36), db.ForeignKey('evaluacion_empresa.id'), nullable=False)
    encuesta_id = db.Column(db.String(36), db.ForeignKey('encuesta.id'), nullable=False)
    empresa_id = db.Column(db.String(36), db.ForeignKey('empresa.id'), nullable=False)
    dimension_id = db.Column(db.String(36), db.ForeignKey('dimension.id'), nullable=True)
    usuario_asignado_id = db.Column(db.String(36), db.ForeignKey('usuario.id'), nullable=False)
    asignado_por_id = db.Column(db.String(36), db.ForeignKey('usuario.id'), nullable=True)

    fecha_asignacion = db.Column(db.DateTime, default=get_now)
    fecha_limite = db.Column(db.Date, nullable=False)
    fecha_completado = db.Column(db.DateTime, nullable=True)

    estado = db.Column(db.String(20), default=ESTADO_PENDIENTE, nullable=False)
    total_preguntas = db.Column(db.Integer, default=0, nullable=False)
    preguntas_respondidas = db.Column(db.Integer, default=0, nullable=False)
    porcentaje_avance = db.Column(db.Float, default=0.0, nullable=False)
    observaciones = db.Column(db.Text, default='')

    # Review gate
    requiere_revision = db.Column(db.Boolean, default=False, nullable=False)
    estado_revision = db.Column(db.String(20), nullable=True) # aprobado, rechazado, reabierta
    fecha_envio_revision = db.Column(db.DateTime, nullable=True)
    revisado_por_id = db.Column(db.String(36), db.ForeignKey('usuario.id'), nullable=True)
    fecha_revision = db.Column(db.DateTime, nullable=True)
    comentarios_revision = db.Column(db.Text, default='')

    activo = db.Column(db.Boolean, default=True, nullable=False)
    fecha_creacion = db.Column(db.DateTime, default=get_now)
    fecha_actualizacion = db.Column(db.DateTime, default=get_now, onupdate=get_now)

    evaluacion = db.relationship('EvaluacionEmpresa', backref=db.backref('asignaciones', lazy=True))
    encuesta = db.relationship('Encuesta')
    dimension = db.relationship('Dimension')
    usuario_asignado = db.relationship('Usuario', foreign_keys=[usuario_asignado_id], backref='asignaciones_recibidas')
    asignado_por = db.relationship('Usuario', foreign_keys=[asignado_por_id])
    revisado_por = db.relationship('Usuario', foreign_keys=[revisado_por_id])

    @property
    def es_evaluacion_completa(self):
        return self.dimension_id is None

    @property
    def esta_vencido(self):
        # Informational only: the deadline never moves the stored state
        return self.estado in ESTADOS_CON_PLAZO and get_today() > self.fecha_limite

    @property
    def estado_display(self):
        return ESTADO_VENCIDO if self.esta_vencido else self.estado

    @property
    def dias_restantes(self):
        if self.estado == ESTADO_COMPLETADO:
            return 0
        return (self.fecha_limite - get_today()).days


db.Index(
    'uq_asignacion_dimension_activa',
    Asignacion.evaluacion_id, Asignacion.dimension_id,
    unique=True,
    sqlite_where=db.and_(Asignacion.activo.is_(True), Asignacion.dimension_id.isnot(None)),
    postgresql_where=db.and_(Asignacion.activo.is_(True), Asignacion.dimension_id.isnot(None)),
)
db.Index(
    'uq_asignacion_evaluacion_activa',
    Asignacion.evaluacion_id, Asignacion.usuario_asignado_id,
    unique=True,
    sqlite_where=db.and_(Asignacion.activo.is_(True), Asignacion.dimension_id.is_(None)),
    postgresql_where=db.and_(Asignacion.activo.is_(True), Asignacion.dimension_id.is_(None)),
)
db.Index('ix_asignacion_usuario_estado', Asignacion.usuario_asignado_id, Asignacion.estado)


class Respuesta(db.Model):
    # Owned by the question/answer store; the workflow engine only reads counts
    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    asignacion_id = db.Column(db.String(36), db.ForeignKey('asignacion.id'), nullable=False)
    pregunta_id = db.Column(db.String(36), db.ForeignKey('pregunta.id'), nullable=False)
    respondido_por_id = db.Column(db.String(36), db.ForeignKey('usuario.id'), nullable=True)
    modificado_por_id = db.Column(db.String(36), db.ForeignKey('usuario.id'), nullable=True)
    valor = db.Column(db.Text, nullable=True)
    activo = db.Column(db.Boolean, default=True, nullable=False)
    fecha_creacion = db.Column(db.DateTime, default=get_now)
    fecha_actualizacion = db.Column(db.DateTime, default=get_now, onupdate=get_now)

    pregunta = db.relationship('Pregunta')

    __table_args__ = (db.UniqueConstraint('asignacion_id', 'pregunta_id', name='uq_respuesta_pregunta'),)


class AsignacionEvento(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    asignacion_id = db.Column(db.String(36), db.ForeignKey('asignacion.id'), nullable=False)
    evaluacion_id = db.Column(db.String(36), db.ForeignKey('evaluacion_empresa.id'), nullable=False)
    actor_id = db.Column(db.String(36), db.ForeignKey('usuario.id'), nullable=True) # Null for system
    actor_type = db.Column(db.String(20), default='USER') # USER, SYSTEM
    event_type = db.Column(db.String(50), nullable=False) # AssignmentCreated, AssignmentApproved, ...
    destinatario_id = db.Column(db.String(36), db.ForeignKey('usuario.id'), nullable=True)
    payload = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=get_now)

    asignacion = db.relationship('Asignacion', backref=db.backref('eventos', lazy=True, cascade='all, delete-orphan'))
