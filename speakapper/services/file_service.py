"""Upload validation and external tool discovery helpers."""

import os
import shutil


def allowed_file(filename, allowed_extensions):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in allowed_extensions


def get_saved_file_size(path):
    try:
        return os.path.getsize(path)
    except Exception:
        return -1


def get_ffmpeg_binary(*, which_func=shutil.which, imageio_ffmpeg_module=None):
    ffmpeg_bin = which_func('ffmpeg')
    if ffmpeg_bin:
        return ffmpeg_bin
    if imageio_ffmpeg_module:
        try:
            ffmpeg_bin = imageio_ffmpeg_module.get_ffmpeg_exe()
            if ffmpeg_bin and os.path.exists(ffmpeg_bin):
                return ffmpeg_bin
        except Exception:
            pass
    return ''


def get_ytdlp_binary(*, which_func=shutil.which):
    return which_func('yt-dlp') or ''


def get_mime_type(filename):
    parts = filename.rsplit('.', 1)
    ext = parts[1].lower() if len(parts) > 1 else ''
    mime_types = {
        'mp3': 'audio/mpeg',
        'mpga': 'audio/mpeg',
        'm4a': 'audio/mp4',
        'mp4': 'video/mp4',
        'wav': 'audio/wav',
        'aac': 'audio/aac',
        'ogg': 'audio/ogg',
        'oga': 'audio/ogg',
        'opus': 'audio/opus',
        'flac': 'audio/flac',
        'webm': 'audio/webm',
        'mov': 'video/quicktime',
    }
    return mime_types.get(ext, 'application/octet-stream')


def extension_for_mime_type(mime_type, default='m4a'):
    base = str(mime_type or '').split(';', 1)[0].strip().lower()
    extensions = {
        'audio/mp4': 'm4a',
        'audio/m4a': 'm4a',
        'audio/webm': 'webm',
        'audio/mpeg': 'mp3',
        'audio/ogg': 'ogg',
        'audio/opus': 'opus',
        'audio/wav': 'wav',
    }
    return extensions.get(base, default)
