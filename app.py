from flask import Flask, request, session, jsonify, abort
import os
from threading import Lock

import click
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException

from models import (
    db, User, Video, VideoProgress, Favorite, MockTestResult, Doubt, Reply,
    Broadcast, VIDEO_TYPES, USER_ROLES, DEFAULT_EXAM,
    get_admin_config, next_video_order, utcnow,
)
from importers import import_videos, import_users, load_user_records

app = Flask(__name__)
app.secret_key = os.getenv('SECRET_KEY', 'change-this-secret-key')

# ==================== CONFIGURATION ====================

basedir = os.path.abspath(os.path.dirname(__file__))
db_dir = os.path.join(basedir, 'instance')
database_url = os.getenv('DATABASE_URL', '').strip()
if database_url.startswith('postgres://'):
    database_url = database_url.replace('postgres://', 'postgresql://', 1)
if database_url:
    app.config['SQLALCHEMY_DATABASE_URI'] = database_url
else:
    os.makedirs(db_dir, exist_ok=True)
    app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///' + os.path.join(db_dir, 'examprep.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['MAX_CONTENT_LENGTH'] = 16 * 1024 * 1024  # 16 MB
app.config['DEFAULT_ADMIN_PASSWORD'] = os.getenv('DEFAULT_ADMIN_PASSWORD', 'admin123')
app.config['RESET_TOKEN_MAX_AGE'] = int(os.getenv('RESET_TOKEN_MAX_AGE', '3600'))
app.config['EXPOSE_RESET_TOKEN'] = os.getenv('EXPOSE_RESET_TOKEN', 'false').lower() == 'true'
app.logger.setLevel(os.getenv('LOG_LEVEL', 'INFO').upper())

db.init_app(app)
db_init_lock = Lock()
db_bootstrapped = False


def ensure_database_initialized():
    global db_bootstrapped
    if db_bootstrapped:
        return

    with db_init_lock:
        if db_bootstrapped:
            return
        try:
            with app.app_context():
                db.create_all()
                get_admin_config(app.config['DEFAULT_ADMIN_PASSWORD'])
            db_bootstrapped = True
        except Exception:
            app.logger.exception('Database initialization failed')


# ==================== REQUEST HELPERS ====================

def get_payload():
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def text_field(data, name):
    value = data.get(name)
    if value is None:
        return ''
    return str(value).strip()


def require_fields(data, *names):
    missing = [name for name in names if not text_field(data, name)]
    if missing:
        abort(400, description=f"Missing required field(s): {', '.join(missing)}")


def normalize_contact(contact_info):
    return str(contact_info or '').strip().lower()


def find_user_or_404(contact_info):
    return User.query.filter_by(contact_info=normalize_contact(contact_info)).first_or_404(
        description='User not found'
    )


def reset_serializer():
    return URLSafeTimedSerializer(app.secret_key, salt='password-reset')


def reset_salt(user):
    # Changing the password changes the salt, so a token works only once
    return 'password-reset:' + user.password_hash


# ==================== AUTH HELPERS ====================

def current_user():
    contact = session.get('contact_info')
    if not contact:
        return None
    return User.query.filter_by(contact_info=contact).first()


def is_admin_logged_in():
    if session.get('is_admin') is True:
        return True
    user = current_user()
    return user is not None and user.role == 'admin'


def require_admin():
    if not is_admin_logged_in():
        return jsonify({'message': 'Admin access required'}), 401
    return None


def require_account(contact_info):
    if is_admin_logged_in():
        return None
    contact = session.get('contact_info')
    if not contact:
        return jsonify({'message': 'Login required'}), 401
    if contact != normalize_contact(contact_info):
        return jsonify({'message': 'Not allowed to access this account'}), 403
    return None


# ==================== HOOKS & ERRORS ====================

@app.before_request
def bootstrap_database():
    ensure_database_initialized()


@app.after_request
def disable_api_caching(response):
    if request.path.startswith('/api/'):
        response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, private'
    return response


@app.errorhandler(HTTPException)
def handle_http_error(error):
    return jsonify({'message': error.description}), error.code


@app.errorhandler(IntegrityError)
def handle_integrity_error(error):
    db.session.rollback()
    app.logger.warning('Integrity error on %s %s: %s', request.method, request.path, error.orig)
    return jsonify({'message': 'Record already exists'}), 409


@app.errorhandler(Exception)
def handle_unexpected_error(error):
    db.session.rollback()
    app.logger.exception('Unhandled error on %s %s', request.method, request.path)
    return jsonify({'message': 'Internal server error'}), 500


@app.route('/health')
def health():
    return {'status': 'ok'}, 200


# ==================== USER ACCOUNTS ====================

@app.route('/api/users', methods=['POST'])
@app.route('/api/users/register', methods=['POST'])
def register():
    data = get_payload()
    require_fields(data, 'fullName', 'contactInfo', 'password')
    contact = normalize_contact(data['contactInfo'])

    if User.query.filter_by(contact_info=contact).first():
        abort(409, description='User already exists')

    user = User(
        contact_info=contact,
        full_name=text_field(data, 'fullName'),
        exam_choice=text_field(data, 'examChoice') or DEFAULT_EXAM,
        role='user',
    )
    user.set_password(text_field(data, 'password'))
    db.session.add(user)
    db.session.commit()
    app.logger.info('Registered user %s', contact)
    return jsonify(user.to_dict()), 201


@app.route('/api/users/login', methods=['POST'])
def login():
    data = get_payload()
    require_fields(data, 'contactInfo', 'password')
    contact = normalize_contact(data['contactInfo'])
    user = User.query.filter_by(contact_info=contact).first()
    if user and user.check_password(text_field(data, 'password')):
        session['contact_info'] = user.contact_info
        app.logger.info('User %s logged in', contact)
        return jsonify(user.to_dict())
    app.logger.warning('Rejected login for %s', contact)
    return jsonify({'message': 'Invalid credentials'}), 401


@app.route('/api/users/logout', methods=['POST'])
def logout():
    session.pop('contact_info', None)
    return jsonify({'message': 'Logged out'})


@app.route('/api/users/forgot-password', methods=['POST'])
def forgot_password():
    data = get_payload()
    require_fields(data, 'contactInfo')
    contact = normalize_contact(data['contactInfo'])
    body = {'message': 'If the account exists, a reset link has been issued'}

    user = User.query.filter_by(contact_info=contact).first()
    if user is None:
        app.logger.info('Password reset requested for unknown contact %s', contact)
        return jsonify(body)

    token = reset_serializer().dumps(user.contact_info, salt=reset_salt(user))
    app.logger.info('Password reset token issued for %s: %s', contact, token)
    if app.config['EXPOSE_RESET_TOKEN']:
        body['resetToken'] = token
    return jsonify(body)


@app.route('/api/users/reset-password', methods=['POST'])
def reset_password():
    data = get_payload()
    require_fields(data, 'token', 'newPassword')
    token = text_field(data, 'token')
    serializer = reset_serializer()

    # The contact is only trusted once the signature checks out against its salt
    _, contact = serializer.loads_unsafe(token)
    user = User.query.filter_by(contact_info=contact).first() if isinstance(contact, str) else None
    if user is None:
        abort(400, description='Invalid reset token')
    try:
        serializer.loads(token, salt=reset_salt(user), max_age=app.config['RESET_TOKEN_MAX_AGE'])
    except SignatureExpired:
        abort(400, description='Reset token has expired')
    except BadSignature:
        abort(400, description='Invalid reset token')

    user.set_password(text_field(data, 'newPassword'))
    db.session.commit()
    app.logger.info('Password reset for %s', user.contact_info)
    return jsonify({'message': 'Password has been reset'})


@app.route('/api/users/update-password', methods=['POST'])
def update_password():
    data = get_payload()
    require_fields(data, 'contactInfo', 'currentPassword', 'newPassword')
    user = find_user_or_404(data['contactInfo'])
    if not user.check_password(text_field(data, 'currentPassword')):
        app.logger.warning('Rejected password update for %s', user.contact_info)
        return jsonify({'message': 'Current password is incorrect'}), 401

    user.set_password(text_field(data, 'newPassword'))
    db.session.commit()
    return jsonify({'message': 'Password updated'})


@app.route('/api/users', methods=['GET'])
def list_users():
    guard = require_admin()
    if guard:
        return guard
    users = User.query.order_by(User.registered_at, User.id).all()
    return jsonify([u.to_dict() for u in users])


@app.route('/api/users/<contact_info>', methods=['GET'])
def get_user(contact_info):
    guard = require_account(contact_info)
    if guard:
        return guard
    return jsonify(find_user_or_404(contact_info).to_dict())


@app.route('/api/users/<contact_info>', methods=['DELETE'])
def delete_user(contact_info):
    guard = require_admin()
    if guard:
        return guard
    user = find_user_or_404(contact_info)
    contact = user.contact_info
    db.session.delete(user)
    db.session.commit()
    app.logger.info('Deleted user %s', contact)
    return jsonify({'message': 'User deleted'})


@app.route('/api/users/<contact_info>/role', methods=['PUT'])
def update_role(contact_info):
    guard = require_admin()
    if guard:
        return guard
    data = get_payload()
    role = text_field(data, 'role').lower()
    if role not in USER_ROLES:
        abort(400, description=f"Role must be one of: {', '.join(USER_ROLES)}")
    user = find_user_or_404(contact_info)
    user.role = role
    db.session.commit()
    return jsonify(user.to_dict())


# ==================== PROGRESS & FAVORITES ====================

@app.route('/api/users/<contact_info>/progress', methods=['PUT'])
def update_progress(contact_info):
    guard = require_account(contact_info)
    if guard:
        return guard
    user = find_user_or_404(contact_info)
    data = get_payload()
    exam = text_field(data, 'exam') or user.exam_choice
    video_id = text_field(data, 'videoId')
    if not video_id:
        abort(400, description='videoId is required')
    completed = data.get('completed')
    if completed is not None and not isinstance(completed, bool):
        abort(400, description='completed must be a boolean')

    entry = VideoProgress.query.filter_by(user_id=user.id, exam=exam, video_id=video_id).first()
    if entry is None:
        db.session.add(VideoProgress(
            user_id=user.id,
            exam=exam,
            video_id=video_id,
            completed=True if completed is None else completed,
        ))
    else:
        entry.completed = (not entry.completed) if completed is None else completed
    db.session.commit()
    return jsonify({'exam': exam, 'progress': user.progress_map(exam).get(exam, {})})


@app.route('/api/users/<contact_info>/favorites', methods=['POST'])
def toggle_favorite(contact_info):
    guard = require_account(contact_info)
    if guard:
        return guard
    user = find_user_or_404(contact_info)
    data = get_payload()
    exam = text_field(data, 'exam') or user.exam_choice
    video = data.get('video') if isinstance(data.get('video'), dict) else {}
    video_id = text_field(video, 'id') or text_field(data, 'videoId')
    if not video_id:
        abort(400, description='video id is required')

    favorite = Favorite.query.filter_by(user_id=user.id, exam=exam, video_id=video_id).first()
    if favorite is not None:
        db.session.delete(favorite)
        favorited = False
    else:
        catalog_entry = db.session.get(Video, video_id)
        db.session.add(Favorite(
            user_id=user.id,
            exam=exam,
            video_id=video_id,
            title=text_field(video, 'title') or (catalog_entry.title if catalog_entry else None),
            type=text_field(video, 'type') or (catalog_entry.type if catalog_entry else None),
        ))
        favorited = True
    db.session.commit()
    return jsonify({
        'exam': exam,
        'favorited': favorited,
        'favorites': user.favorites_map(exam).get(exam, []),
    })


@app.route('/api/users/<contact_info>/favorites/<video_id>', methods=['DELETE'])
def remove_favorite(contact_info, video_id):
    guard = require_account(contact_info)
    if guard:
        return guard
    user = find_user_or_404(contact_info)
    exam = request.args.get('exam', '').strip() or user.exam_choice
    favorite = Favorite.query.filter_by(user_id=user.id, exam=exam, video_id=video_id).first_or_404(
        description='Favorite not found'
    )
    db.session.delete(favorite)
    db.session.commit()
    return jsonify({'exam': exam, 'favorites': user.favorites_map(exam).get(exam, [])})


@app.route('/api/users/<contact_info>/mock-tests', methods=['POST'])
def add_mock_test(contact_info):
    guard = require_account(contact_info)
    if guard:
        return guard
    user = find_user_or_404(contact_info)
    data = get_payload()
    require_fields(data, 'testName')
    try:
        score = int(data.get('score'))
        total = int(data.get('total'))
    except (TypeError, ValueError):
        abort(400, description='score and total must be integers')
    if total <= 0 or not 0 <= score <= total:
        abort(400, description='score must be between 0 and total')

    db.session.add(MockTestResult(
        user_id=user.id,
        exam=text_field(data, 'exam') or user.exam_choice,
        test_name=text_field(data, 'testName'),
        score=score,
        total=total,
    ))
    db.session.commit()
    return jsonify({'mockTestHistory': [m.to_dict() for m in user.mock_tests]}), 201


# ==================== VIDEO CATALOG ====================

def validate_video_type(value):
    video_type = (value or 'youtube').strip().lower()
    if video_type not in VIDEO_TYPES:
        abort(400, description=f"type must be one of: {', '.join(VIDEO_TYPES)}")
    return video_type


def id_list(data):
    ids = data.get('ids')
    if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
        abort(400, description='ids must be a list of video ids')
    return ids


@app.route('/api/videos', methods=['GET'])
def list_videos():
    query = Video.query
    category = request.args.get('category', '').strip()
    if category:
        query = query.filter_by(category=category)
    videos = query.order_by(Video.order, Video.title).all()
    return jsonify([v.to_dict() for v in videos])


@app.route('/api/videos/<video_id>', methods=['GET'])
def get_video(video_id):
    video = db.get_or_404(Video, video_id, description='Video not found')
    return jsonify(video.to_dict())


@app.route('/api/videos', methods=['POST'])
def create_video():
    guard = require_admin()
    if guard:
        return guard
    data = get_payload()
    require_fields(data, 'id', 'title', 'category')
    video_id = text_field(data, 'id')
    if db.session.get(Video, video_id):
        abort(409, description='Video already exists')

    video = Video(
        id=video_id,
        title=text_field(data, 'title'),
        type=validate_video_type(text_field(data, 'type')),
        category=text_field(data, 'category'),
        order=next_video_order(),
    )
    db.session.add(video)
    db.session.commit()
    return jsonify(video.to_dict()), 201


@app.route('/api/videos/<video_id>', methods=['PUT'])
def update_video(video_id):
    guard = require_admin()
    if guard:
        return guard
    video = db.get_or_404(Video, video_id, description='Video not found')
    data = get_payload()

    title = text_field(data, 'title')
    category = text_field(data, 'category')
    if title:
        video.title = title
    if category:
        video.category = category
    if text_field(data, 'type'):
        video.type = validate_video_type(text_field(data, 'type'))
    if 'order' in data:
        order = data['order']
        if isinstance(order, bool) or not isinstance(order, int):
            abort(400, description='order must be an integer')
        video.order = order
    db.session.commit()
    return jsonify(video.to_dict())


@app.route('/api/videos/<video_id>', methods=['DELETE'])
def delete_video(video_id):
    guard = require_admin()
    if guard:
        return guard
    video = db.get_or_404(Video, video_id, description='Video not found')
    db.session.delete(video)
    db.session.commit()
    return jsonify({'message': 'Video deleted'})


@app.route('/api/videos', methods=['DELETE'])
def delete_videos():
    guard = require_admin()
    if guard:
        return guard
    ids = id_list(get_payload())
    deleted = 0
    if ids:
        deleted = Video.query.filter(Video.id.in_(ids)).delete(synchronize_session=False)
        db.session.commit()
    return jsonify({'deleted': deleted})


@app.route('/api/videos/reorder', methods=['POST'])
def reorder_videos():
    guard = require_admin()
    if guard:
        return guard
    ids = id_list(get_payload())
    videos = {v.id: v for v in Video.query.filter(Video.id.in_(ids)).all()} if ids else {}
    for position, video_id in enumerate(ids):
        if video_id in videos:
            videos[video_id].order = position
    db.session.commit()
    return jsonify({'updated': len(videos)})


@app.route('/api/videos/bulk', methods=['POST'])
def bulk_import_videos():
    guard = require_admin()
    if guard:
        return guard
    upload = request.files.get('file')
    if upload:
        try:
            text = upload.read().decode('utf-8-sig')
        except UnicodeDecodeError:
            abort(400, description='CSV file must be UTF-8 text')
    elif request.is_json:
        text = text_field(get_payload(), 'csv')
    else:
        text = request.get_data(as_text=True)
    if not text.strip():
        abort(400, description='No CSV data provided')

    added, skipped = import_videos(text)
    app.logger.info('Bulk import added %d videos, skipped %d rows', added, skipped)
    return jsonify({'added': added, 'skipped': skipped}), 201


# ==================== DOUBT FORUM ====================

def author_from(data):
    user = current_user()
    if user:
        return user.full_name, user.contact_info
    name = text_field(data, 'authorName')
    if not name:
        abort(400, description='authorName is required')
    return name, text_field(data, 'authorId') or None


@app.route('/api/doubts', methods=['GET'])
def list_doubts():
    query = Doubt.query
    video_id = request.args.get('videoId', '').strip()
    if video_id:
        query = query.filter_by(video_id=video_id)
    doubts = query.order_by(Doubt.created_at, Doubt.id).all()
    return jsonify([d.to_dict() for d in doubts])


@app.route('/api/doubts', methods=['POST'])
def create_doubt():
    data = get_payload()
    require_fields(data, 'videoId', 'question')
    author_name, author_id = author_from(data)
    doubt = Doubt(
        video_id=text_field(data, 'videoId'),
        question=text_field(data, 'question'),
        author_name=author_name,
        author_id=author_id,
    )
    db.session.add(doubt)
    db.session.commit()
    return jsonify(doubt.to_dict()), 201


@app.route('/api/doubts/<int:doubt_id>/replies', methods=['POST'])
def add_reply(doubt_id):
    doubt = db.get_or_404(Doubt, doubt_id, description='Doubt not found')
    data = get_payload()
    require_fields(data, 'text')
    author_name, author_id = author_from(data)
    reply = Reply(
        doubt_id=doubt.id,
        text=text_field(data, 'text'),
        author_name=author_name,
        author_id=author_id,
    )
    db.session.add(reply)
    db.session.commit()
    return jsonify(reply.to_dict()), 201


# ==================== BROADCAST ====================

@app.route('/api/broadcast', methods=['GET'])
def get_broadcast():
    broadcast = Broadcast.query.first()
    return jsonify(broadcast.to_dict() if broadcast else {})


@app.route('/api/broadcast', methods=['POST'])
def post_broadcast():
    guard = require_admin()
    if guard:
        return guard
    data = get_payload()
    require_fields(data, 'message')
    broadcast = Broadcast.query.first()
    if broadcast is None:
        broadcast = Broadcast(message=text_field(data, 'message'))
        db.session.add(broadcast)
    else:
        broadcast.message = text_field(data, 'message')
        broadcast.created_at = utcnow()
    db.session.commit()
    return jsonify(broadcast.to_dict()), 201


@app.route('/api/broadcast', methods=['DELETE'])
def delete_broadcast():
    guard = require_admin()
    if guard:
        return guard
    Broadcast.query.delete()
    db.session.commit()
    return jsonify({})


# ==================== ADMIN ====================

@app.route('/api/admin/login', methods=['POST'])
def admin_login():
    data = get_payload()
    require_fields(data, 'password')
    config = get_admin_config(app.config['DEFAULT_ADMIN_PASSWORD'])
    if config.check_password(text_field(data, 'password')):
        session['is_admin'] = True
        app.logger.info('Admin logged in')
        return jsonify({'message': 'Admin login successful'})
    app.logger.warning('Rejected admin login')
    return jsonify({'message': 'Invalid admin credentials'}), 401


@app.route('/api/admin/logout', methods=['POST'])
def admin_logout():
    session.pop('is_admin', None)
    return jsonify({'message': 'Logged out'})


@app.route('/api/admin/change-password', methods=['POST'])
def admin_change_password():
    data = get_payload()
    require_fields(data, 'currentPassword', 'newPassword')
    config = get_admin_config(app.config['DEFAULT_ADMIN_PASSWORD'])
    if not config.check_password(text_field(data, 'currentPassword')):
        app.logger.warning('Rejected admin password change')
        return jsonify({'message': 'Current password is incorrect'}), 401
    config.set_password(text_field(data, 'newPassword'))
    db.session.commit()
    app.logger.info('Admin password changed')
    return jsonify({'message': 'Admin password updated'})


# ==================== CLI ====================

@app.cli.command('init-db')
def init_db_command():
    """Create database tables and the admin config."""
    db.create_all()
    get_admin_config(app.config['DEFAULT_ADMIN_PASSWORD'])
    click.echo('Database initialized.')


@app.cli.command('import-users')
@click.argument('source')
def import_users_command(source):
    """Import users from a JSON export at SOURCE (file path or URL)."""
    db.create_all()
    try:
        records = load_user_records(source)
    except Exception as e:
        raise click.ClickException(f'Could not load users from {source}: {e}')
    click.echo(f'Found {len(records)} users to import.')
    imported, skipped = import_users(records, logger=app.logger)
    click.echo(f'Imported {imported} users, skipped {skipped}.')


if __name__ == '__main__':
    ensure_database_initialized()
    app.run(debug=True)
