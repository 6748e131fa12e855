"""
Shared fixtures: a fresh in-memory SQLite app per test, seeded with one
survey (3 dimensions), two companies and users for every role.
"""

from datetime import timedelta
from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

from grc_asignaciones.app import create_app
from grc_asignaciones.auth import emitir_token
from grc_asignaciones.models import (
    db, Empresa, Usuario, Encuesta, Dimension, Pregunta, EvaluacionEmpresa, get_today,
    ROL_SUPERADMIN, ROL_ADMINISTRADOR, ROL_USUARIO,
)
from grc_asignaciones.services.asignacion_service import AsignacionService
from grc_asignaciones.services.evento_service import EventoService
from grc_asignaciones.services.respuesta_service import RespuestaService

PASSWORD = 'secret'


@pytest.fixture
def app():
    app = create_app({
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'TESTING': True,
        'SECRET_KEY': 'test-secret',
        'NOTIFICATION_WEBHOOK_URL': None,
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def eventos(app):
    recibidos = []
    EventoService.suscribir(app, recibidos.append)
    return recibidos


def _usuario(email, nombre, rol, empresa=None):
    usuario = Usuario(
        email=email,
        nombre_completo=nombre,
        rol=rol,
        empresa_id=empresa.id if empresa else None,
        password_hash=generate_password_hash(PASSWORD)
    )
    db.session.add(usuario)
    return usuario


def _encuesta(nombre, dimensiones):
    encuesta = Encuesta(nombre=nombre)
    db.session.add(encuesta)
    db.session.flush()
    creadas = []
    for orden, (codigo, n_preguntas) in enumerate(dimensiones, start=1):
        dimension = Dimension(encuesta_id=encuesta.id, codigo=codigo, nombre=f"Dimension {codigo}", orden=orden)
        db.session.add(dimension)
        db.session.flush()
        for i in range(n_preguntas):
            db.session.add(Pregunta(dimension_id=dimension.id, codigo=f"{codigo}-{i + 1}", texto=f"Pregunta {i + 1}", orden=i))
        creadas.append(dimension)
    return encuesta, creadas


@pytest.fixture
def datos(app):
    with app.app_context():
        empresa = Empresa(nombre='Acme')
        otra = Empresa(nombre='Globex')
        db.session.add_all([empresa, otra])
        db.session.flush()

        superadmin = _usuario('root@grc.test', 'Root', ROL_SUPERADMIN)
        admin = _usuario('admin@acme.test', 'Admin Acme', ROL_ADMINISTRADOR, empresa)
        admin_otra = _usuario('admin@globex.test', 'Admin Globex', ROL_ADMINISTRADOR, otra)
        u1 = _usuario('u1@acme.test', 'Usuario Uno', ROL_USUARIO, empresa)
        u2 = _usuario('u2@acme.test', 'Usuario Dos', ROL_USUARIO, empresa)
        externo = _usuario('ext@globex.test', 'Externo', ROL_USUARIO, otra)

        encuesta, (d1, d2, d3) = _encuesta('Madurez GRC', [('D1', 2), ('D2', 3), ('D3', 1)])
        vacia, _ = _encuesta('Encuesta vacia', [])
        db.session.flush()

        evaluacion = EvaluacionEmpresa(
            encuesta_id=encuesta.id, empresa_id=empresa.id, administrador_id=admin.id,
            asignado_por_id=superadmin.id, fecha_limite=get_today() + timedelta(days=30),
            total_dimensiones=3
        )
        evaluacion_vacia = EvaluacionEmpresa(
            encuesta_id=vacia.id, empresa_id=empresa.id, administrador_id=admin.id,
            asignado_por_id=superadmin.id, fecha_limite=get_today() + timedelta(days=30)
        )
        db.session.add_all([evaluacion, evaluacion_vacia])
        db.session.commit()

        return SimpleNamespace(
            empresa_id=empresa.id, otra_empresa_id=otra.id,
            superadmin_id=superadmin.id, admin_id=admin.id, admin_otra_id=admin_otra.id,
            u1_id=u1.id, u2_id=u2.id, externo_id=externo.id,
            encuesta_id=encuesta.id, encuesta_vacia_id=vacia.id,
            d1_id=d1.id, d2_id=d2.id, d3_id=d3.id,
            evaluacion_id=evaluacion.id, evaluacion_vacia_id=evaluacion_vacia.id,
        )


def usuario(usuario_id):
    return db.session.get(Usuario, usuario_id)


def en_dias(n):
    return (get_today() + timedelta(days=n)).isoformat()


def responder(asignacion_id, actor, n=None):
    """Answers the first n questions in scope (all of them when n is None)."""
    asignacion = AsignacionService._get(asignacion_id)
    query = Pregunta.query.join(Dimension, Pregunta.dimension_id == Dimension.id).filter(
        Pregunta.activo.is_(True), Dimension.encuesta_id == asignacion.encuesta_id
    )
    if asignacion.dimension_id:
        query = query.filter(Pregunta.dimension_id == asignacion.dimension_id)
    preguntas = query.order_by(Dimension.orden, Pregunta.orden).all()
    for pregunta in preguntas[:n]:
        RespuestaService.guardar_respuesta(asignacion_id, pregunta.id, 'si', actor)
        asignacion = AsignacionService.registrar_respuesta(asignacion_id, pregunta.id, actor)
    return asignacion


@pytest.fixture
def auth_headers(app):
    def _headers(usuario_id):
        with app.app_context():
            token = emitir_token(db.session.get(Usuario, usuario_id))
        return {'Authorization': f'Bearer {token}'}
    return _headers
