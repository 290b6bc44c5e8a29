# attachments.py
import logging
import os
import secrets

from flask import current_app
from werkzeug.utils import secure_filename

from errors import ValidationError

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = {
    'image/jpeg',
    'image/png',
    'image/gif',
    'application/pdf',
    'text/plain',
    'text/csv',
    'application/msword',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
    'application/vnd.ms-excel',
    'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
    'text/log',
}
MAX_FILES_PER_UPLOAD = 10


def _upload_folder():
    folder = current_app.config['UPLOAD_FOLDER']
    os.makedirs(folder, exist_ok=True)
    return folder


def file_size(f):
    f.seek(0, os.SEEK_END)
    size = f.tell()
    f.seek(0)
    return size


def validate_uploads(files):
    """Drop empty slots and reject the batch if any file breaks the limits."""
    files = [f for f in files if f and f.filename]
    if len(files) > MAX_FILES_PER_UPLOAD:
        raise ValidationError(f'Too many files. The limit is {MAX_FILES_PER_UPLOAD} per upload.')
    max_size = current_app.config['MAX_ATTACHMENT_SIZE']
    for f in files:
        if f.mimetype not in ALLOWED_MIME_TYPES:
            raise ValidationError(
                f'Invalid file type: {f.filename}. Only images, documents, and text files are allowed.'
            )
        if file_size(f) > max_size:
            raise ValidationError(f'File too large: {f.filename}. The limit is {max_size // (1024 * 1024)}MB per file.')
    return files


def save_upload(ticket_id, f):
    """Write one validated upload to disk; returns (file_name, stored_name, size, mime_type)."""
    original = secure_filename(f.filename) or 'file'
    ext = os.path.splitext(original)[1].lower()
    stored_name = f'{ticket_id}_{secrets.token_hex(8)}{ext}'
    save_path = os.path.join(_upload_folder(), stored_name)
    f.save(save_path)
    return original, stored_name, os.path.getsize(save_path), f.mimetype


def remove_file(stored_name):
    """Delete a stored file; a file that is already gone is not an error."""
    path = os.path.join(current_app.config['UPLOAD_FOLDER'], stored_name)
    try:
        os.remove(path)
    except FileNotFoundError:
        logger.info('Attachment file already missing: %s', stored_name)
        return False
    except OSError as e:
        logger.warning('Could not remove attachment file %s: %s', stored_name, e)
        return False
    return True
