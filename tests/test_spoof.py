from pipeline.spoof import analyze_spoof_signals, score_labels


def test_confident_screen_label_is_suspicious():
    result = score_labels([
        {"description": "Identity document", "score": 0.95},
        {"description": "LCD screen", "score": 0.82},
    ])
    assert result.spoof_risk_score == 70
    assert result.signals == ["screen_capture_suspected"]


def test_low_confidence_screen_label_is_ignored():
    result = score_labels([{"description": "computer monitor", "score": 0.5}])
    assert result.spoof_risk_score == 0
    assert result.signals == []


def test_max_score_and_union_of_signals():
    labels = {
        "doc.jpg": [{"description": "paper", "score": 0.9}],
        "selfie.jpg": [{"description": "display device", "score": 0.9}],
    }
    result = analyze_spoof_signals(["doc.jpg", "selfie.jpg"], label_image=lambda ref: labels[ref])
    assert result.spoof_risk_score == 70
    assert result.signals == ["screen_capture_suspected"]


def test_failed_image_counts_as_zero():
    def label(ref):
        if ref == "broken.jpg":
            raise IOError("download failed")
        return [{"description": "person", "score": 0.99}]

    result = analyze_spoof_signals(["broken.jpg", "ok.jpg"], label_image=label)
    assert result.spoof_risk_score == 0
    assert result.signals == []


def test_no_images():
    result = analyze_spoof_signals([], label_image=lambda ref: [])
    assert result.spoof_risk_score == 0
