"""
Tests for report storage
"""
import asyncio


class TestBlobStore:

    def test_upload_get_list_delete(self, blob_store):
        async def scenario():
            ref = await blob_store.upload_file(
                b'{"alerts": []}', "zap_auth_detailed_alerts_s1.json",
                {"scan_id": "s1", "content_type": "application/json", "format": "json",
                 "description": "Full alert details with all affected URLs"},
            )
            stored = await blob_store.get_file(ref.file_id)
            listed = await blob_store.list_files("s1")
            deleted = await blob_store.delete_file(ref.file_id)
            after = await blob_store.get_file(ref.file_id)
            return ref, stored, listed, deleted, after

        ref, stored, listed, deleted, after = asyncio.run(scenario())
        assert ref.size == 14
        assert ref.to_dict()["fileId"] == ref.file_id
        assert stored["data"] == b'{"alerts": []}'
        assert stored["content_type"] == "application/json"
        assert [f["filename"] for f in listed] == ["zap_auth_detailed_alerts_s1.json"]
        assert deleted is True
        assert after is None

    def test_description_optional(self, blob_store):
        ref = asyncio.run(blob_store.upload_file(b"<html></html>", "report.html",
                                                 {"scan_id": "s1", "format": "html"}))
        assert "description" not in ref.to_dict()

    def test_unsafe_names_stay_inside_root(self, blob_store):
        async def scenario():
            ref = await blob_store.upload_file(b"x", "../../etc/passwd", {"scan_id": "../s1"})
            return await blob_store.get_file(ref.file_id)

        stored = asyncio.run(scenario())
        assert stored["path"].startswith(str(blob_store.root_dir))
        assert ".." not in stored["path"][len(str(blob_store.root_dir)):].split("/")

    def test_unknown_file(self, blob_store):
        assert asyncio.run(blob_store.get_file("missing")) is None
        assert asyncio.run(blob_store.delete_file("missing")) is False
