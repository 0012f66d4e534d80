from apk_merger import sanitize_manifest, sanitize_manifest_text, strip_signatures

SPLIT_MANIFEST = """<?xml version="1.0" encoding="utf-8" standalone="no"?><manifest xmlns:android="http://schemas.android.com/apk/res/android" android:isSplitRequired="true" package="com.example.app">
    <application android:label="@string/app_name" android:isSplitRequired="true" android:extractNativeLibs="false">
        <meta-data android:name="com.android.vending.splits.required" android:value="true"/>
        <meta-data android:name="com.android.stamp.source" android:value="https://play.google.com/store"/>
        <meta-data android:name="com.android.stamp.type" android:value="STAMP_TYPE_DISTRIBUTION_APK"/>
        <meta-data android:name="com.android.vending.splits" android:resource="@xml/splits0"/>
        <activity android:name=".MainActivity"/>
    </application>
</manifest>
"""


def test_split_markers_removed():
    text, n = sanitize_manifest_text(SPLIT_MANIFEST)
    assert n == 5
    assert "isSplitRequired" not in text
    assert "com.android.vending.splits" not in text
    assert "STAMP_TYPE_DISTRIBUTION_APK" not in text
    assert 'android:value="STAMP_TYPE_STANDALONE_APK"' in text
    assert '<manifest xmlns:android="http://schemas.android.com/apk/res/android" package="com.example.app">' in text
    assert '<application android:label="@string/app_name" android:extractNativeLibs="false">' in text
    assert '<activity android:name=".MainActivity"/>' in text
    assert "com.android.stamp.source" in text


def test_unrelated_attributes_survive():
    text = '<application android:isSplitRequired="false" android:name=".App"/>'
    assert sanitize_manifest_text(text) == (text, 0)


def test_sanitize_is_idempotent(tmp_path):
    manifest = tmp_path / "AndroidManifest.xml"
    manifest.write_text(SPLIT_MANIFEST, encoding="utf-8")
    assert sanitize_manifest(manifest) == 5
    once = manifest.read_text(encoding="utf-8")
    assert sanitize_manifest(manifest) == 0
    assert manifest.read_text(encoding="utf-8") == once


def test_missing_manifest_is_noop(tmp_path):
    assert sanitize_manifest(tmp_path / "AndroidManifest.xml") == 0
    assert not (tmp_path / "AndroidManifest.xml").exists()


def test_strip_signatures(tmp_path):
    meta = tmp_path / "original" / "META-INF"
    meta.mkdir(parents=True)
    for name in ("BNDLTOOL.RSA", "BNDLTOOL.SF", "MANIFEST.MF", "CERT.ec", "services.txt"):
        (meta / name).write_text(name)
    assert strip_signatures(tmp_path) == ["BNDLTOOL.RSA", "BNDLTOOL.SF", "CERT.ec", "MANIFEST.MF"]
    assert [p.name for p in meta.iterdir()] == ["services.txt"]


def test_strip_signatures_without_meta_inf(tmp_path):
    assert strip_signatures(tmp_path) == []
