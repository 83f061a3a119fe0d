from io import BytesIO

import pytest
from PIL import Image

from app import create_app
from plugins.super_resolution.core import SessionService, load_settings

BASE = "/api/v1/super_resolution"
MODEL_2X = "caidas/swin2SR-classical-sr-x2-64"
MODEL_4X = "caidas/swin2SR-classical-sr-x4-64"


@pytest.fixture
def app_and_service(factory, tmp_path):
    app = create_app("TestingConfig")
    raw = {"enabled": True, "device": "cpu", "max_upload_mb": 1, "autoload": False}
    app.config["PLUGIN_SETTINGS"]["super_resolution"] = raw
    service = SessionService.from_settings(load_settings(raw, root=tmp_path), construct=factory)
    app.extensions["super_resolution"] = service
    yield app, service
    service.close()


@pytest.fixture
def client(app_and_service):
    return app_and_service[0].test_client()


@pytest.fixture
def service(app_and_service):
    return app_and_service[1]


def _upload(client, data, filename="photo.png"):
    return client.post(
        f"{BASE}/image",
        data={"image": (BytesIO(data), filename)},
        content_type="multipart/form-data",
    )


def _load_model(client, service, model_id=MODEL_2X):
    response = client.post(f"{BASE}/model", json={"model": model_id})
    assert response.status_code == 202
    service.wait_idle(5)
    return response


def test_health_reports_device_and_default_model(client):
    response = client.get(f"{BASE}/health")
    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["status"] == "ok"
    assert data["device"] == "cpu"
    assert data["backend"] == "fallback-software"
    assert data["model_loaded"] is False
    assert data["model_name"] == "Super-Resolution 2x"


def test_models_lists_registry_in_order(client):
    data = client.get(f"{BASE}/models").get_json()["data"]
    ids = [model["id"] for model in data["models"]]
    assert ids[0] == MODEL_2X
    assert "RealESRGAN_x4plus_anime_6B" in ids
    assert data["default_model"] == MODEL_2X
    assert data["models"][0]["scale"] == "2x"


def test_full_upscale_flow(client, service, image_bytes):
    accepted = client.post(f"{BASE}/model", json={"model": MODEL_2X})
    assert accepted.status_code == 202
    assert accepted.get_json()["data"]["model"]["id"] == MODEL_2X
    service.wait_idle(5)

    state = client.get(f"{BASE}/state").get_json()["data"]
    assert state["phase"] == "ready"
    assert state["model_ready"] is True
    assert state["progress"]["status"] == "Model ready!"

    uploaded = _upload(client, image_bytes(100, 80))
    assert uploaded.status_code == 200
    image = uploaded.get_json()["data"]["image"]
    assert (image["width"], image["height"]) == (100, 80)
    preview = client.get(image["url"])
    assert preview.status_code == 200
    assert preview.mimetype == "image/png"

    assert client.post(f"{BASE}/run").status_code == 202
    state = service.wait_idle(5).to_dict()
    assert state["phase"] == "ready"
    assert (state["output"]["width"], state["output"]["height"]) == (200, 160)

    download = client.get(f"{BASE}/download")
    assert download.status_code == 200
    assert download.mimetype == "image/jpeg"
    disposition = download.headers["Content-Disposition"]
    assert "attachment" in disposition
    assert "upscaled-2x-" in disposition
    with Image.open(BytesIO(download.data)) as result:
        assert result.size == (200, 160)


def test_run_without_model_is_rejected(client, image_bytes):
    _upload(client, image_bytes())
    response = client.post(f"{BASE}/run")
    assert response.status_code == 400
    error = response.get_json()["error"]
    assert error["code"] == "super_resolution.validation"
    assert "No model" in error["message"]


def test_run_without_image_is_rejected(client, service):
    _load_model(client, service)
    response = client.post(f"{BASE}/run")
    assert response.status_code == 400
    assert response.get_json()["error"]["message"] == "Please select an image."


def test_unknown_model_is_rejected(client):
    response = client.post(f"{BASE}/model", json={"model": "nobody/nothing"})
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "super_resolution.unknown_model"


def test_model_payload_is_validated(client):
    response = client.post(f"{BASE}/model", json={"model": MODEL_2X, "scale": 4})
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "super_resolution.invalid_parameters"


def test_failed_load_is_reported_in_state(client, service, factory):
    factory.failures[MODEL_4X] = ConnectionError("network unreachable")
    _load_model(client, service, MODEL_4X)

    state = client.get(f"{BASE}/state").get_json()["data"]
    assert state["phase"] == "error"
    assert "network unreachable" in state["error"]
    assert state["loaded_model"] is None


def test_upload_requires_a_file(client):
    response = client.post(f"{BASE}/image", data={}, content_type="multipart/form-data")
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "super_resolution.missing_image"


def test_upload_rejects_non_images(client):
    response = _upload(client, b"%PDF-1.4 not an image", "doc.png")
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "super_resolution.invalid_upload"


def test_upload_rejects_oversized_files(client):
    response = _upload(client, b"\x89PNG\r\n\x1a\n" + b"\x00" * (1024 * 1024 + 1))
    assert response.status_code == 413
    assert response.get_json()["error"]["code"] == "super_resolution.too_large"


def test_reset_clears_image_and_revokes_assets(client, service, image_bytes):
    _load_model(client, service)
    url = _upload(client, image_bytes()).get_json()["data"]["image"]["url"]

    state = client.post(f"{BASE}/reset").get_json()["data"]

    assert state["image"] is None
    assert state["phase"] == "ready"
    assert state["loaded_model"] == MODEL_2X
    missing = client.get(url)
    assert missing.status_code == 404
    assert missing.get_json()["error"]["code"] == "super_resolution.not_found"


def test_download_without_output_is_not_found(client):
    response = client.get(f"{BASE}/download")
    assert response.status_code == 404
    assert response.get_json()["error"]["code"] == "super_resolution.no_output"


def test_disabled_plugin_returns_not_found(app_and_service):
    app, _service = app_and_service
    app.config["PLUGIN_SETTINGS"]["super_resolution"] = {"enabled": False}
    response = app.test_client().get(f"{BASE}/health")
    assert response.status_code == 404
    assert response.get_json()["error"]["code"] == "super_resolution.disabled"


def test_upload_with_huge_declared_size_is_rejected(client, png_header_only):
    response = _upload(client, png_header_only(20000, 20000))
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "super_resolution.validation"
