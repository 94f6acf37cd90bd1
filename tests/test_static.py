from docsync.cache import StaticFileCache


def write_public(tmp_path, files: dict) -> None:
    public = tmp_path / "public"
    for name, content in files.items():
        path = public / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content if isinstance(content, bytes) else content.encode())


def test_root_serves_index_with_validators(make_client, tmp_path):
    write_public(tmp_path, {"index.html": "<html>app</html>"})
    client = make_client()

    response = client.get("/")

    assert response.status_code == 200
    assert response.text == "<html>app</html>"
    assert response.headers["content-type"].startswith("text/html")
    assert response.headers["etag"]
    assert response.headers["last-modified"]


def test_conditional_requests_revalidate(make_client, tmp_path):
    write_public(tmp_path, {"index.html": "<html>app</html>", "app.css": "body {}"})
    client = make_client()
    first = client.get("/app.css")

    by_etag = client.get("/app.css", headers={"If-None-Match": first.headers["etag"]})
    by_date = client.get("/app.css", headers={"If-Modified-Since": first.headers["last-modified"]})
    stale = client.get("/app.css", headers={"If-None-Match": '"something-else"'})

    assert first.headers["content-type"].startswith("text/css")
    assert by_etag.status_code == 304
    assert by_date.status_code == 304
    assert stale.status_code == 200
    assert stale.text == "body {}"


def test_small_files_are_cached_in_memory(make_client, tmp_path):
    write_public(tmp_path, {"index.html": "<html>app</html>", "app.js": "console.log(1)"})
    client = make_client()

    client.get("/app.js")
    client.get("/app.js")

    assert len(client.app.state.context.static_cache) == 1


def test_large_files_are_streamed_without_caching(make_client, tmp_path):
    big = b"a" * (StaticFileCache.MAX_FILE_BYTES + 10)
    write_public(tmp_path, {"index.html": "<html>app</html>", "bundle.js": big})
    client = make_client()

    response = client.get("/bundle.js")

    assert response.status_code == 200
    assert response.content == big
    assert len(client.app.state.context.static_cache) == 0


def test_unknown_paths_fall_back_to_index(make_client, tmp_path):
    write_public(tmp_path, {"index.html": "<html>spa</html>"})
    client = make_client()

    response = client.get("/settings/profile")

    assert response.status_code == 200
    assert response.text == "<html>spa</html>"


def test_directory_serves_its_index(make_client, tmp_path):
    write_public(tmp_path, {"index.html": "<html>root</html>", "docs/index.html": "<html>docs</html>"})
    client = make_client()

    assert client.get("/docs/").text == "<html>docs</html>"


def test_missing_index_is_not_found(make_client):
    client = make_client()

    response = client.get("/anything")

    assert response.status_code == 404
    assert response.json()["code"] == "FILE_NOT_FOUND"


def test_nul_byte_in_path_falls_back_to_index(make_client, tmp_path):
    write_public(tmp_path, {"index.html": "<html>spa</html>"})
    client = make_client()

    response = client.get("/a%00b")

    assert response.status_code == 200
    assert response.text == "<html>spa</html>"


def test_traversal_outside_public_dir_is_denied(make_client, tmp_path):
    write_public(tmp_path, {"index.html": "<html>spa</html>"})
    (tmp_path / "secret.txt").write_text("secret")
    client = make_client()

    response = client.get("/%2E%2E/secret.txt")

    assert response.status_code == 403
    assert response.json()["code"] == "ACCESS_DENIED"
