from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

import apps.videos.views as views
import main
from main import app


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def _upload(client, data=b'0123456789', filename='a.mp4', content_type='video/mp4', title=None):
    form = {'title': title} if title is not None else None
    return client.post('/api/v1/videos/upload', files={'video': (filename, data, content_type)}, data=form)


def test_root_and_health(client):
    assert client.get('/').status_code == 200
    assert client.get('/api/v1/status').json() == {'status': 'API routes ready'}
    resp = client.get('/health')
    assert resp.status_code == 200
    assert resp.json() == {'status': 'healthy'}


def test_upload_scenario(client):
    resp = _upload(client)
    assert resp.status_code == 201
    body = resp.json()
    assert body['title'] == 'a'
    assert body['size'] == 10
    assert body['contentType'] == 'video/mp4'
    assert body['url'] == f"/api/v1/videos/stream/{body['id']}"
    assert 'uploadedAt' in body

    listed = client.get('/api/v1/videos/')
    assert listed.status_code == 200
    assert [v['id'] for v in listed.json()] == [body['id']]
    assert listed.json()[0]['title'] == 'a'


def test_upload_with_title(client):
    resp = _upload(client, title='Holiday')
    assert resp.status_code == 201
    assert resp.json()['title'] == 'Holiday'


def test_list_empty(client):
    resp = client.get('/api/v1/videos/')
    assert resp.status_code == 200
    assert resp.json() == []


def test_upload_rejects_non_video(client):
    resp = _upload(client, filename='a.png', content_type='image/png')
    assert resp.status_code == 400
    assert resp.json() == {'detail': 'File must be a video'}
    assert client.get('/api/v1/videos/').json() == []


def test_upload_without_file_field(client):
    resp = client.post('/api/v1/videos/upload', data={'title': 'x'})
    assert resp.status_code == 400


def test_upload_not_multipart(client):
    resp = client.post('/api/v1/videos/upload', content=b'garbage',
                       headers={'Content-Type': 'multipart/form-data'})
    assert resp.status_code == 400


def test_upload_too_large(client, monkeypatch):
    monkeypatch.setattr(views, 'MAX_UPLOAD_SIZE', 5)
    resp = _upload(client)
    assert resp.status_code == 400
    assert client.get('/api/v1/videos/').json() == []


def test_stream_redirects_to_signed_blob(client):
    video_id = _upload(client).json()['id']
    resp = client.get(f'/api/v1/videos/stream/{video_id}', follow_redirects=False)
    assert resp.status_code == 307
    location = resp.headers['location']
    assert urlparse(location).path.startswith('/api/v1/videos/blobs/')

    blob = client.get(location)
    assert blob.status_code == 200
    assert blob.content == b'0123456789'
    assert blob.headers['content-type'] == 'video/mp4'


def test_signed_blob_rejects_tampering(client):
    video_id = _upload(client).json()['id']
    location = client.get(f'/api/v1/videos/stream/{video_id}', follow_redirects=False).headers['location']
    resp = client.get(location.replace('signature=', 'signature=0'))
    assert resp.status_code == 403


def test_stream_bad_and_unknown_ids(client):
    assert client.get('/api/v1/videos/stream/abc', follow_redirects=False).status_code == 400
    assert client.get('/api/v1/videos/stream/0', follow_redirects=False).status_code == 400
    resp = client.get('/api/v1/videos/stream/999', follow_redirects=False)
    assert resp.status_code == 404
    assert 'detail' in resp.json()


def test_delete_twice(client):
    video_id = _upload(client).json()['id']
    resp = client.delete(f'/api/v1/videos/{video_id}')
    assert resp.status_code == 200
    assert resp.json() == {'message': 'Video deleted successfully'}
    assert client.get('/api/v1/videos/').json() == []
    assert client.delete(f'/api/v1/videos/{video_id}').status_code == 404


def test_delete_bad_id(client):
    assert client.delete('/api/v1/videos/not-a-number').status_code == 400


def test_delete_survives_blob_failure(client, monkeypatch):
    video_id = _upload(client).json()['id']
    storage = app.state.video_manager.storage

    async def broken_delete(key):
        raise OSError('disk gone')

    monkeypatch.setattr(storage, 'delete', broken_delete)
    resp = client.delete(f'/api/v1/videos/{video_id}')
    assert resp.status_code == 200
    assert client.get('/api/v1/videos/').json() == []


def test_health_reports_database_error(client, monkeypatch):
    async def broken_check():
        return 'connection refused'

    monkeypatch.setattr(main, 'check_db', broken_check)
    resp = client.get('/health')
    assert resp.status_code == 503
    assert resp.json() == {'status': 'unhealthy', 'error': 'connection refused'}


def test_requests_share_database_across_tasks(client):
    first = _upload(client, filename='one.mp4').json()['id']
    second = _upload(client, filename='two.mp4').json()['id']
    assert [v['id'] for v in client.get('/api/v1/videos/').json()] == [first, second]
    assert client.delete(f'/api/v1/videos/{first}').status_code == 200
    assert client.get(f'/api/v1/videos/stream/{second}', follow_redirects=False).status_code == 307


@pytest.mark.parametrize('field', ['title', 'filename'])
def test_upload_rejects_overlong_names(client, field):
    long_name = 'x' * 300
    if field == 'title':
        resp = _upload(client, title=long_name)
    else:
        resp = _upload(client, filename=long_name + '.mp4')
    assert resp.status_code == 400
    assert 'longer than 255' in resp.json()['detail']
    assert client.get('/api/v1/videos/').json() == []


def test_signed_blob_supports_range(client):
    video_id = _upload(client).json()['id']
    location = client.get(f'/api/v1/videos/stream/{video_id}', follow_redirects=False).headers['location']
    resp = client.get(location, headers={'Range': 'bytes=2-5'})
    assert resp.status_code == 206
    assert resp.content == b'2345'
    assert resp.headers['content-range'] == 'bytes 2-5/10'


def test_signed_blob_with_malformed_expiry(client):
    video_id = _upload(client).json()['id']
    location = client.get(f'/api/v1/videos/stream/{video_id}', follow_redirects=False).headers['location']
    parsed = urlparse(location)
    query = parse_qs(parsed.query)
    resp = client.get(parsed.path, params={'expires': 'soon', 'signature': query['signature'][0]})
    assert resp.status_code == 403
    assert resp.json() == {'detail': 'Invalid or expired link'}


def test_ids_beyond_64_bits_are_rejected(client):
    too_big = 2 ** 63
    assert client.get(f'/api/v1/videos/stream/{too_big}', follow_redirects=False).status_code == 400
    assert client.delete(f'/api/v1/videos/{too_big}').status_code == 400
    assert client.get(f'/api/v1/videos/stream/{too_big - 1}', follow_redirects=False).status_code == 404
