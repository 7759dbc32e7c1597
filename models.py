from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()

VIDEO_TYPES = ('youtube', 'gdrive')
USER_ROLES = ('user', 'admin')
DEFAULT_EXAM = 'upsc'
PLACEHOLDER_PREFIX = 'placeholder_'


def utcnow():
    return datetime.now(timezone.utc)


def isoformat(value):
    return value.isoformat() if value else None


# ==================== CATALOG ====================

class Video(db.Model):
    id = db.Column(db.String(100), primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    type = db.Column(db.String(20), nullable=False, default='youtube')
    category = db.Column(db.String(100), nullable=False, index=True)
    order = db.Column(db.Integer, nullable=False, default=0)

    @property
    def is_placeholder(self):
        return self.id.startswith(PLACEHOLDER_PREFIX)

    @property
    def embed_url(self):
        if self.is_placeholder:
            return None
        if self.type == 'gdrive':
            return f'https://drive.google.com/file/d/{self.id}/preview'
        return f'https://www.youtube.com/embed/{self.id}?autoplay=1'

    @property
    def thumbnail_url(self):
        # Drive previews have no public thumbnail endpoint
        if self.is_placeholder or self.type == 'gdrive':
            return None
        return f'https://img.youtube.com/vi/{self.id}/mqdefault.jpg'

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'type': self.type,
            'category': self.category,
            'order': self.order,
            'embedUrl': self.embed_url,
            'thumbnailUrl': self.thumbnail_url,
        }

    def __repr__(self):
        return f'<Video {self.title}>'


def next_video_order():
    current = db.session.query(db.func.max(Video.order)).scalar()
    return 0 if current is None else current + 1


# ==================== USERS ====================

class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    contact_info = db.Column(db.String(200), nullable=False, unique=True)
    full_name = db.Column(db.String(200), nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    exam_choice = db.Column(db.String(50), nullable=False, default=DEFAULT_EXAM)
    role = db.Column(db.String(20), nullable=False, default='user')
    registered_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    progress_entries = db.relationship('VideoProgress', backref='user', lazy=True, cascade='all, delete-orphan')
    favorites = db.relationship('Favorite', backref='user', lazy=True, cascade='all, delete-orphan',
                                order_by='Favorite.id')
    mock_tests = db.relationship('MockTestResult', backref='user', lazy=True, cascade='all, delete-orphan',
                                 order_by='MockTestResult.id')

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def progress_map(self, exam=None):
        result = {}
        for entry in self.progress_entries:
            if exam is not None and entry.exam != exam:
                continue
            result.setdefault(entry.exam, {})[entry.video_id] = entry.completed
        return result

    def favorites_map(self, exam=None):
        result = {}
        for fav in self.favorites:
            if exam is not None and fav.exam != exam:
                continue
            result.setdefault(fav.exam, []).append(fav.to_dict())
        return result

    def to_dict(self):
        return {
            'contactInfo': self.contact_info,
            'fullName': self.full_name,
            'examChoice': self.exam_choice,
            'role': self.role,
            'registeredAt': isoformat(self.registered_at),
            'progress': self.progress_map(),
            'favorites': self.favorites_map(),
            'mockTestHistory': [m.to_dict() for m in self.mock_tests],
        }

    def __repr__(self):
        return f'<User {self.contact_info}>'


class VideoProgress(db.Model):
    __table_args__ = (db.UniqueConstraint('user_id', 'exam', 'video_id'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    exam = db.Column(db.String(50), nullable=False)
    video_id = db.Column(db.String(100), nullable=False)
    completed = db.Column(db.Boolean, nullable=False, default=False)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Favorite(db.Model):
    __table_args__ = (db.UniqueConstraint('user_id', 'exam', 'video_id'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    exam = db.Column(db.String(50), nullable=False)
    video_id = db.Column(db.String(100), nullable=False)
    title = db.Column(db.String(300), nullable=True)
    type = db.Column(db.String(20), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {'id': self.video_id, 'title': self.title, 'type': self.type}


class MockTestResult(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    exam = db.Column(db.String(50), nullable=False)
    test_name = db.Column(db.String(200), nullable=False)
    score = db.Column(db.Integer, nullable=False)
    total = db.Column(db.Integer, nullable=False)
    taken_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'exam': self.exam,
            'testName': self.test_name,
            'score': self.score,
            'total': self.total,
            'takenAt': isoformat(self.taken_at),
        }


# ==================== FORUM ====================

class Doubt(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    video_id = db.Column(db.String(100), nullable=False, index=True)
    question = db.Column(db.Text, nullable=False)
    author_name = db.Column(db.String(200), nullable=False)
    author_id = db.Column(db.String(200), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    replies = db.relationship('Reply', backref='doubt', lazy=True, cascade='all, delete-orphan',
                              order_by='Reply.id')

    def to_dict(self):
        return {
            'id': self.id,
            'videoId': self.video_id,
            'question': self.question,
            'authorName': self.author_name,
            'authorId': self.author_id,
            'createdAt': isoformat(self.created_at),
            'replies': [r.to_dict() for r in self.replies],
        }

    def __repr__(self):
        return f'<Doubt {self.question[:30]}>'


class Reply(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    doubt_id = db.Column(db.Integer, db.ForeignKey('doubt.id'), nullable=False)
    text = db.Column(db.Text, nullable=False)
    author_name = db.Column(db.String(200), nullable=False)
    author_id = db.Column(db.String(200), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'text': self.text,
            'authorName': self.author_name,
            'authorId': self.author_id,
            'createdAt': isoformat(self.created_at),
        }


# ==================== SITE SETTINGS ====================

class Broadcast(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    message = db.Column(db.String(1000), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {'message': self.message, 'createdAt': isoformat(self.created_at)}


class AdminConfig(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    password_hash = db.Column(db.String(256), nullable=False)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)


def get_admin_config(default_password):
    """Return the singleton admin config, creating it on first read."""
    config = AdminConfig.query.first()
    if config is None:
        config = AdminConfig(password_hash=generate_password_hash(default_password))
        db.session.add(config)
        db.session.commit()
    return config
