import pytest

from uploads import MAX_FILE_SIZE

JPEG = b"\xff\xd8\xff\xe0fake-jpeg"


def images(*names, content_type="image/jpeg"):
    return [("images", (name, JPEG, content_type)) for name in names]


@pytest.fixture
def vehicle(create_vehicle, manager):
    return create_vehicle(manager)


def upload(client, headers, user, vehicle_id, files):
    return client.post(f"/api/upload/vehicle-images/{vehicle_id}", files=files, headers=headers(user))


def test_upload_requires_manager(client, make_user, headers, vehicle):
    assert upload(client, headers, make_user(), vehicle["id"], images("a.jpg")).status_code == 403


def test_first_uploaded_image_becomes_primary(client, manager, headers, vehicle, media):
    r = upload(client, headers, manager, vehicle["id"], images("a.jpg", "b.jpg", "c.jpg"))
    assert r.status_code == 200
    stored = r.json()["data"]["images"]
    assert len(stored) == 3
    assert [img["isPrimary"] for img in stored] == [True, False, False]
    assert len(media.uploaded) == 3

    fetched = client.get(f"/api/vehicles/{vehicle['id']}").json()["data"]["vehicle"]
    assert fetched["primaryImage"] == stored[0]["url"]
    assert fetched["history"][-1]["action"] == "Images ajoutées"


def test_too_many_files(client, manager, headers, vehicle, media):
    r = upload(client, headers, manager, vehicle["id"], images(*[f"{i}.jpg" for i in range(6)]))
    assert r.status_code == 400
    assert media.uploaded == []


def test_non_image_rejected(client, manager, headers, vehicle, media):
    r = upload(client, headers, manager, vehicle["id"], images("notes.txt", content_type="text/plain"))
    assert r.status_code == 400
    assert media.uploaded == []


def test_oversized_file_rejected(client, manager, headers, vehicle):
    big = [("images", ("big.jpg", b"0" * (MAX_FILE_SIZE + 1), "image/jpeg"))]
    assert upload(client, headers, manager, vehicle["id"], big).status_code == 400


def test_failed_batch_persists_nothing(client, manager, headers, vehicle, media, services):
    media.fail_on.add("broken.jpg")
    r = upload(client, headers, manager, vehicle["id"], images("a.jpg", "broken.jpg", "c.jpg"))
    assert r.status_code == 500
    assert services.repos.vehicles.get(vehicle["id"]).images == []
    assert sorted(media.destroyed) == sorted(media.uploaded)


def test_upload_to_deleted_vehicle(client, manager, headers, vehicle, media):
    client.delete(f"/api/vehicles/{vehicle['id']}", headers=headers(manager))
    assert upload(client, headers, manager, vehicle["id"], images("a.jpg")).status_code == 404
    assert media.uploaded == []


def test_set_primary_image(client, manager, headers, vehicle):
    stored = upload(client, headers, manager, vehicle["id"], images("a.jpg", "b.jpg")).json()["data"]["images"]
    r = client.put(f"/api/upload/vehicle-images/{vehicle['id']}/primary", headers=headers(manager),
                   json={"imageId": stored[1]["id"]})
    assert [img["isPrimary"] for img in r.json()["data"]["images"]] == [False, True]

    r = client.put(f"/api/upload/vehicle-images/{vehicle['id']}/primary", headers=headers(manager),
                   json={"imageId": "64b0000000000000000000ff"})
    assert r.status_code == 404


def test_delete_primary_promotes_next(client, manager, headers, vehicle, media):
    stored = upload(client, headers, manager, vehicle["id"], images("a.jpg", "b.jpg", "c.jpg")).json()["data"]["images"]
    r = client.delete(f"/api/upload/vehicle-images/{vehicle['id']}/{stored[0]['id']}", headers=headers(manager))
    assert r.status_code == 200
    remaining = r.json()["data"]["images"]
    assert [img["id"] for img in remaining] == [stored[1]["id"], stored[2]["id"]]
    assert [img["isPrimary"] for img in remaining] == [True, False]
    assert media.destroyed == [stored[0]["mediaId"]]


def test_delete_image_keeps_vehicle_when_host_fails(client, manager, headers, vehicle, media, services):
    from errors import StorageError

    stored = upload(client, headers, manager, vehicle["id"], images("a.jpg")).json()["data"]["images"]

    def broken_destroy(media_id, resource_type="image"):
        raise StorageError("Erreur lors de la suppression du fichier")

    media.destroy = broken_destroy
    r = client.delete(f"/api/upload/vehicle-images/{vehicle['id']}/{stored[0]['id']}", headers=headers(manager))
    assert r.status_code == 500
    assert len(services.repos.vehicles.get(vehicle["id"]).images) == 1


def test_delete_unknown_image(client, manager, headers, vehicle, media):
    r = client.delete(f"/api/upload/vehicle-images/{vehicle['id']}/64b0000000000000000000ff",
                      headers=headers(manager))
    assert r.status_code == 404
    assert media.destroyed == []


def test_standalone_uploads(client, manager, headers, media):
    r = client.post("/api/upload/image", files={"image": ("a.png", JPEG, "image/png")}, headers=headers(manager))
    assert r.status_code == 200
    assert r.json()["data"]["mediaId"] in media.uploaded

    r = client.post("/api/upload/images", files=images("a.jpg", "b.jpg"), headers=headers(manager))
    assert len(r.json()["data"]["images"]) == 2

    r = client.post("/api/upload/document", files={"document": ("devis.pdf", b"%PDF-1.4", "application/pdf")},
                    headers=headers(manager))
    assert r.status_code == 200
    r = client.post("/api/upload/document", files={"document": ("script.sh", b"echo", "text/x-sh")},
                    headers=headers(manager))
    assert r.status_code == 400


def test_delete_by_media_id(client, manager, headers, media):
    r = client.delete("/api/upload/autoparc/vehicles/abc123", headers=headers(manager))
    assert r.status_code == 200
    assert media.destroyed == ["autoparc/vehicles/abc123"]


def test_attach_vehicle_document(client, manager, headers, vehicle):
    r = client.post(
        f"/api/upload/vehicle-documents/{vehicle['id']}",
        files={"document": ("assurance.pdf", b"%PDF-1.4", "application/pdf")},
        data={"name": "Assurance 2025", "type": "Assurance", "expiryDate": "2030-01-01T00:00:00Z"},
        headers=headers(manager),
    )
    assert r.status_code == 200
    documents = r.json()["data"]["documents"]
    assert documents[0]["name"] == "Assurance 2025"
    assert documents[0]["type"] == "Assurance"
    assert documents[0]["expiryDate"].startswith("2030-01-01")

    r = client.post(
        f"/api/upload/vehicle-documents/{vehicle['id']}",
        files={"document": ("x.pdf", b"%PDF-1.4", "application/pdf")},
        data={"name": "Inconnu", "type": "Passeport"},
        headers=headers(manager),
    )
    assert r.status_code == 400
    assert r.json()["errors"][0]["field"] == "type"


def bump_version(services, vehicle_id):
    from bson import ObjectId

    def bump():
        services.repos.vehicles.collection.update_one({"_id": ObjectId(vehicle_id)}, {"$inc": {"version": 1}})
    return bump


def test_conflicting_save_discards_hosted_images(client, manager, headers, vehicle, media, services):
    media.after_upload = bump_version(services, vehicle["id"])
    r = upload(client, headers, manager, vehicle["id"], images("a.jpg", "b.jpg"))
    assert r.status_code == 409
    assert len(media.uploaded) == 2
    assert sorted(media.destroyed) == sorted(media.uploaded)
    assert services.repos.vehicles.get(vehicle["id"]).images == []


def test_conflicting_save_discards_hosted_document(client, manager, headers, vehicle, media, services):
    media.after_upload = bump_version(services, vehicle["id"])
    r = client.post(
        f"/api/upload/vehicle-documents/{vehicle['id']}",
        files={"document": ("carte-grise.pdf", b"%PDF-1.4", "application/pdf")},
        data={"name": "Carte grise", "type": "Carte grise"},
        headers=headers(manager),
    )
    assert r.status_code == 409
    assert media.destroyed == media.uploaded
    assert services.repos.vehicles.get(vehicle["id"]).documents == []


def test_unexpected_host_error_still_cleans_batch(client, manager, headers, vehicle, media, services):
    media.crash_on.add("odd.jpg")
    r = upload(client, headers, manager, vehicle["id"], images("a.jpg", "odd.jpg", "c.jpg"))
    assert r.status_code == 500
    assert len(media.uploaded) == 2
    assert sorted(media.destroyed) == sorted(media.uploaded)
    assert services.repos.vehicles.get(vehicle["id"]).images == []
