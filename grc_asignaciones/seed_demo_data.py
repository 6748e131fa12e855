from datetime import timedelta
from werkzeug.security import generate_password_hash
from grc_asignaciones.models import (
    db, Empresa, Usuario, Encuesta, Dimension, Pregunta, get_today,
    ROL_SUPERADMIN, ROL_ADMINISTRADOR, ROL_USUARIO,
)
from grc_asignaciones.services.evaluacion_service import EvaluacionService

DEMO_PASSWORD = '123456'

DIMENSIONES = [
    ('GOB', 'Gobierno de Seguridad', ['¿Existe una política de seguridad aprobada?', '¿Hay roles definidos?']),
    ('RIE', 'Gestión de Riesgos', ['¿Se mantiene un inventario de activos?', '¿Se evalúan riesgos anualmente?', '¿Hay plan de tratamiento?']),
    ('CON', 'Continuidad del Negocio', ['¿Existe un BCP documentado?', '¿Se prueba el plan de recuperación?']),
]


def create_user(email, nombre, rol, empresa=None):
    usuario = Usuario.query.filter_by(email=email).first()
    if not usuario:
        print(f"Creating {rol}: {email}...")
        usuario = Usuario(email=email, nombre_completo=nombre, rol=rol)
        db.session.add(usuario)
    else:
        print(f"{email} already exists. Resetting password...")
    usuario.password_hash = generate_password_hash(DEMO_PASSWORD)
    usuario.empresa_id = empresa.id if empresa else None
    usuario.rol = rol
    db.session.commit()
    return usuario


def create_encuesta(nombre):
    encuesta = Encuesta.query.filter_by(nombre=nombre).first()
    if encuesta:
        print(f"Encuesta {nombre} already exists.")
        return encuesta

    encuesta = Encuesta(nombre=nombre, version='1.0')
    db.session.add(encuesta)
    db.session.flush()
    for orden, (codigo, nombre_dim, preguntas) in enumerate(DIMENSIONES, start=1):
        dimension = Dimension(encuesta_id=encuesta.id, codigo=codigo, nombre=nombre_dim, orden=orden)
        db.session.add(dimension)
        db.session.flush()
        for i, texto in enumerate(preguntas, start=1):
            db.session.add(Pregunta(dimension_id=dimension.id, codigo=f"{codigo}-{i}", texto=texto, orden=i))
    db.session.commit()
    return encuesta


def seed():
    empresa = Empresa.query.filter_by(nombre='Empresa Demo').first()
    if not empresa:
        empresa = Empresa(nombre='Empresa Demo', ruc='20123456789')
        db.session.add(empresa)
        db.session.commit()

    superadmin = create_user('superadmin@demo.com', 'Super Admin', ROL_SUPERADMIN)
    admin = create_user('admin@demo.com', 'Admin Demo', ROL_ADMINISTRADOR, empresa)
    create_user('ana@demo.com', 'Ana Pérez', ROL_USUARIO, empresa)
    create_user('luis@demo.com', 'Luis Gómez', ROL_USUARIO, empresa)

    encuesta = create_encuesta('Evaluación de Madurez GRC')
    evaluacion = EvaluacionService.listar(superadmin, empresa_id=empresa.id)
    if evaluacion:
        evaluacion = evaluacion[0]
        print(f"Evaluacion {evaluacion.id} already exists.")
    else:
        evaluacion = EvaluacionService.asignar(
            encuesta.id, empresa.id, admin.id, get_today() + timedelta(days=30), actor=superadmin
        )
    return evaluacion


if __name__ == '__main__':
    from grc_asignaciones.app import create_app

    app = create_app()
    with app.app_context():
        evaluacion = seed()
        print("\nSUCCESS! Demo data created:")
        print(f"Evaluacion: {evaluacion.id}")
        print(f"superadmin@demo.com / admin@demo.com / ana@demo.com / luis@demo.com - password {DEMO_PASSWORD}")
