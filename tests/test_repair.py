import pytest
from unittest.mock import MagicMock, patch

from psycopg import errors as pg_errors

from contractos_api.errors import ContractNotFound, StorageError
from contractos_api.ingestion import repair
from contractos_api.ingestion.repair import sanitize_filename

CONTRACT_ID = "7d7b3f0e-1111-4c53-8f0a-5f0e4d1d9a01"
SOURCE = {"etag": "e-source", "size_bytes": 2048}


@pytest.mark.parametrize(
    "name,expected",
    [
        ("EDP N°3 (final).pdf", "EDP_N3_final.pdf"),
        ("Informe   técnico.pdf", "Informe_técnico.pdf"),
        ("Contrato_Marco.pdf", "Contrato_Marco.pdf"),
        ("#$%.pdf", "document.pdf"),
    ],
)
def test_sanitize_filename(name, expected):
    assert sanitize_filename(name) == expected
    assert sanitize_filename(expected) == expected


@pytest.fixture
def mock_log():
    with patch("contractos_api.ingestion.repair.append_log") as mock:
        yield mock


def test_filename_repair_requeues_with_verified_copy(mock_log):
    store = MagicMock()
    store.stat_blob.side_effect = [SOURCE, None, SOURCE]
    rows = [{"id": "j1", "storage_path": "acme/C-101/edp/EDP N°3.pdf", "last_error": "extraction_upstream_error: PDF parsing failed: upload"}]
    with patch("contractos_api.ingestion.repair._db_fetch_all", return_value=rows), patch(
        "contractos_api.ingestion.repair._db_execute_returning", return_value={"id": "j1", "attempts": 2}
    ) as update:
        result = repair.repair_unparseable_filenames(blob_store=store)

    assert result["fixed"] == 1
    store.copy_blob.assert_called_once_with("acme/C-101/edp/EDP N°3.pdf", "acme/C-101/edp/EDP_N3.pdf", job_id="j1")
    sql, params = update.call_args[0]
    assert "status = 'queued', last_error = NULL" in sql
    assert "attempts" not in sql.split("RETURNING")[0]
    assert params == ("acme/C-101/edp/EDP_N3.pdf", "j1")
    store.delete_blob.assert_called_once_with("acme/C-101/edp/EDP N°3.pdf", job_id="j1")
    assert mock_log.call_args[0][1] == "repair"


def test_filename_repair_keeps_job_failed_when_copy_is_not_visible(mock_log):
    store = MagicMock()
    store.stat_blob.side_effect = [SOURCE, None, None]
    rows = [{"id": "j1", "storage_path": "acme/a b.pdf", "last_error": "PDF parsing failed"}]
    with patch("contractos_api.ingestion.repair._db_fetch_all", return_value=rows), patch(
        "contractos_api.ingestion.repair._db_execute_returning"
    ) as update:
        result = repair.repair_unparseable_filenames(blob_store=store)

    assert result["fixed"] == 0
    assert result["skipped"] == 1
    update.assert_not_called()


def test_filename_repair_tolerates_failed_delete(mock_log):
    store = MagicMock()
    store.stat_blob.side_effect = [SOURCE, None, SOURCE]
    store.delete_blob.side_effect = StorageError("AccessDenied")
    rows = [{"id": "j1", "storage_path": "acme/a b.pdf", "last_error": "PDF parsing failed"}]
    with patch("contractos_api.ingestion.repair._db_fetch_all", return_value=rows), patch(
        "contractos_api.ingestion.repair._db_execute_returning", return_value={"id": "j1", "attempts": 1}
    ):
        result = repair.repair_unparseable_filenames(blob_store=store)
    assert result["fixed"] == 1
    assert mock_log.call_args[0][3]["old_deleted"] is False


def test_filename_repair_skips_path_collision(mock_log):
    store = MagicMock()
    store.stat_blob.return_value = SOURCE
    rows = [{"id": "j1", "storage_path": "acme/a b.pdf", "last_error": "PDF parsing failed"}]
    with patch("contractos_api.ingestion.repair._db_fetch_all", return_value=rows), patch(
        "contractos_api.ingestion.repair._db_execute_returning", side_effect=pg_errors.UniqueViolation("dup")
    ):
        result = repair.repair_unparseable_filenames(blob_store=store)
    assert result["fixed"] == 0
    assert "another job" in result["skipped_jobs"][0]["reason"]
    store.delete_blob.assert_not_called()


def test_filename_repair_never_reuses_an_unrelated_destination(mock_log):
    store = MagicMock()
    other = {"etag": "e-other", "size_bytes": 99}
    store.stat_blob.side_effect = [SOURCE, other, None, SOURCE]
    rows = [{"id": "j1", "storage_path": "acme/C-101/contracts/Contrato 1.pdf", "last_error": "PDF parsing failed"}]
    with patch("contractos_api.ingestion.repair._db_fetch_all", return_value=rows), patch(
        "contractos_api.ingestion.repair._db_execute_returning", return_value={"id": "j1", "attempts": 1}
    ) as update:
        result = repair.repair_unparseable_filenames(blob_store=store)

    assert result["fixed"] == 1
    store.copy_blob.assert_called_once_with(
        "acme/C-101/contracts/Contrato 1.pdf", "acme/C-101/contracts/Contrato_1_2.pdf", job_id="j1"
    )
    assert update.call_args[0][1] == ("acme/C-101/contracts/Contrato_1_2.pdf", "j1")


def test_filename_repair_reuses_an_identical_earlier_copy(mock_log):
    store = MagicMock()
    store.stat_blob.return_value = SOURCE
    rows = [{"id": "j1", "storage_path": "acme/a b.pdf", "last_error": "PDF parsing failed"}]
    with patch("contractos_api.ingestion.repair._db_fetch_all", return_value=rows), patch(
        "contractos_api.ingestion.repair._db_execute_returning", return_value={"id": "j1", "attempts": 1}
    ) as update:
        result = repair.repair_unparseable_filenames(blob_store=store)

    assert result["fixed"] == 1
    store.copy_blob.assert_not_called()
    assert update.call_args[0][1] == ("acme/a_b.pdf", "j1")


def test_filename_repair_skips_missing_source(mock_log):
    store = MagicMock()
    store.stat_blob.return_value = None
    rows = [{"id": "j1", "storage_path": "acme/a b.pdf", "last_error": "PDF parsing failed"}]
    with patch("contractos_api.ingestion.repair._db_fetch_all", return_value=rows), patch(
        "contractos_api.ingestion.repair._db_execute_returning"
    ) as update:
        result = repair.repair_unparseable_filenames(blob_store=store)

    assert result["skipped_jobs"][0]["reason"] == "Source object acme/a b.pdf is missing"
    update.assert_not_called()


def test_path_repair_unknown_contract():
    with patch("contractos_api.ingestion.repair._db_fetch_one", return_value=None):
        with pytest.raises(ContractNotFound):
            repair.repair_job_paths(CONTRACT_ID)


def test_path_repair_rederives_type_and_resets_attempts(mock_log):
    rows = [
        {"id": "j1", "storage_path": "acme/C-101/edp/EDP_01.pdf", "contract_id": None, "document_type": "unknown", "status": "failed"},
        {"id": "j2", "storage_path": "acme/C-999/edp/EDP_01.pdf", "contract_id": None, "document_type": "edp", "status": "failed"},
    ]
    with patch("contractos_api.ingestion.repair._db_fetch_one", return_value={"id": CONTRACT_ID, "code": "C-101"}), patch(
        "contractos_api.ingestion.repair._db_fetch_all", return_value=rows
    ), patch("contractos_api.ingestion.repair._db_execute_returning", return_value={"id": "j1"}) as update:
        result = repair.repair_job_paths(CONTRACT_ID)

    assert result == {"fixed": 1, "skipped": 1}
    sql, params = update.call_args[0]
    assert "attempts = 0" in sql
    assert params == (CONTRACT_ID, "edp", "j1")
