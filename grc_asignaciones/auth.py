from flask import Blueprint, request, current_app
from flask_login import LoginManager
from werkzeug.security import check_password_hash
from grc_asignaciones.models import db, Usuario
from grc_asignaciones.utils import api_response
from datetime import datetime, timedelta, timezone
import jwt

auth = Blueprint('auth', __name__)
login_manager = LoginManager()


def emitir_token(usuario):
    dias = int(current_app.config.get('JWT_EXPIRATION_DAYS', 7))
    return jwt.encode({
        'user_id': usuario.id,
        'empresa_id': usuario.empresa_id,
        'rol': usuario.rol,
        'exp': datetime.now(timezone.utc) + timedelta(days=dias)
    }, current_app.config['SECRET_KEY'], algorithm="HS256")


@login_manager.request_loader
def load_user_from_request(req):
    auth_header = req.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    try:
        data = jwt.decode(token, current_app.config['SECRET_KEY'], algorithms=["HS256"])
    except jwt.InvalidTokenError as e:
        current_app.logger.warning(f"Rejected bearer token: {e}")
        return None
    usuario = db.session.get(Usuario, data.get('user_id'))
    if not usuario or not usuario.activo:
        return None
    return usuario


@login_manager.unauthorized_handler
def unauthorized():
    return api_response(success=False, error={'code': 'unauthorized', 'message': 'Token ausente o inválido'}, status=401)


@auth.route('/api/auth/token', methods=['POST'])
def token():
    data = request.get_json(silent=True) or {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    usuario = Usuario.query.filter_by(email=email).first()
    if not usuario or not usuario.activo or not check_password_hash(usuario.password_hash, password):
        return api_response(success=False, error={'code': 'unauthorized', 'message': 'Credenciales inválidas'}, status=401)

    current_app.logger.info(f"Token emitido para {usuario.id}")
    return api_response(data={
        'token': emitir_token(usuario),
        'usuario': {
            'id': usuario.id,
            'nombre_completo': usuario.nombre_completo,
            'email': usuario.email,
            'rol': usuario.rol,
            'empresa_id': usuario.empresa_id
        }
    })
