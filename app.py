"""Gradio interface for the mask searcher"""

import os
from typing import Dict, Optional

import gradio as gr
import numpy as np
import plotly.express as px

from masksearch.matcher import (
    DEFAULT_MATCH_PERCENT,
    DEFAULT_TOLERANCE,
    find_mask_in_image,
    format_match_report,
    format_match_summary,
    render_match_focus,
)
from masksearch.version import __version__

VIEW_KEYS = [
    "mask",
    "match_focus",
]

VIEW_LABELS = {
    "mask": "Mask",
    "match_focus": "Selected match (zoomed)",
}


def make_zoomable_plot(image: Optional[np.ndarray]):
    """Create a Plotly figure with zoom/pan for a numpy RGB image."""
    if image is None:
        base = np.zeros((10, 10, 3), dtype=np.uint8)
    else:
        base = image
    if base.dtype != np.uint8:
        base = np.clip(base, 0, 255).astype(np.uint8)
    fig = px.imshow(base)
    fig.update_layout(
        margin=dict(l=0, r=0, t=0, b=0),
        dragmode="pan",
        coloraxis_showscale=False,
    )
    fig.update_xaxes(showticklabels=False, showgrid=False, zeroline=False)
    fig.update_yaxes(
        showticklabels=False,
        showgrid=False,
        zeroline=False,
        scaleanchor="x",
        scaleratio=1,
    )
    return fig


def _views_to_outputs(
    views: Dict[str, Optional[np.ndarray]],
    annotated_plot,
    report: str,
    summary: str,
    state,
    idx: int,
):
    ordered = [views.get(key) for key in VIEW_KEYS]
    return (annotated_plot, *ordered, report, summary, state, idx)


def _blank_outputs(message: str):
    blank_views = {key: None for key in VIEW_KEYS}
    return _views_to_outputs(blank_views, make_zoomable_plot(None), "", message, None, 0)


def _render_match_payload(payload, idx: int):
    views = {"mask": payload.mask.data[:, :, :3]}
    if payload.matches:
        views["match_focus"] = render_match_focus(payload, idx)
    annotated_plot = make_zoomable_plot(payload.annotated.data[:, :, :3])
    report = "```\n" + format_match_report(payload) + "\n```"
    summary = format_match_summary(payload, idx)
    return _views_to_outputs(views, annotated_plot, report, summary, payload, idx)


def _change_match(step: int, payload, current_index: int):
    if payload is None:
        return _blank_outputs("Run the search once both images are uploaded.")
    total = len(payload.matches)
    if total == 0:
        return _render_match_payload(payload, 0)
    idx = (current_index or 0) + step
    idx %= total
    return _render_match_payload(payload, idx)


def run_search(main_path, mask_path, match_percent, tolerance):
    """Run the mask search and return the visualization slices"""
    if not main_path or not os.path.exists(main_path):
        return _blank_outputs("Please upload a main image.")
    if not mask_path or not os.path.exists(mask_path):
        return _blank_outputs("Please upload a mask image.")

    try:
        match_percent = int(match_percent)
        tolerance = int(tolerance)
    except (TypeError, ValueError):
        return _blank_outputs("Match percentage and tolerance must be whole numbers.")

    try:
        payload = find_mask_in_image(
            main_path,
            mask_path,
            match_percent=match_percent,
            tolerance=tolerance,
        )
    except (RuntimeError, ValueError) as exc:
        return _blank_outputs(f"Error: {exc}")
    return _render_match_payload(payload, 0)


def goto_previous_match(state, current_index):
    return _change_match(-1, state, current_index)


def goto_next_match(state, current_index):
    return _change_match(1, state, current_index)


app_theme = gr.themes.Soft()
with gr.Blocks(title=f"Mask Search v{__version__}") as demo:
    gr.Markdown(
        f"""
    # Mask Search v{__version__}

    Upload a main image and a mask, then find every place the mask occurs.

    Notes:
    - Opaque black mask pixels are background: they should look like the
      surroundings of the subject. Every other mask pixel is the subject.
    - Matches are scored against the average background color under the mask,
      so the subject can appear on any uniform backdrop.
    - Overlapping hits are reduced to the top-left-most one.
    """
    )

    with gr.Row():
        with gr.Column(scale=1):
            gr.Markdown("### Upload Images")
            main_input = gr.Image(
                label="Main image",
                type="filepath",
                image_mode="RGBA",
                sources=["upload", "clipboard"],
                height=300,
            )
            mask_input = gr.Image(
                label="Mask image",
                type="filepath",
                image_mode="RGBA",
                sources=["upload", "clipboard"],
                height=160,
            )
            match_percent_input = gr.Slider(
                label="Match percentage",
                minimum=0,
                maximum=100,
                step=1,
                value=DEFAULT_MATCH_PERCENT,
            )
            tolerance_input = gr.Slider(
                label="Tolerance",
                minimum=0,
                maximum=256,
                step=1,
                value=DEFAULT_TOLERANCE,
            )
            search_button = gr.Button("Find Matches", variant="primary")
        with gr.Column(scale=1):
            gr.Markdown("### Annotated image")
            annotated_plot = gr.Plot(label="Annotated image")
            gr.Markdown("Use the controls to zoom and pan the image.")
            report_output = gr.Markdown()

    image_components = {}
    with gr.Row():
        for key in VIEW_KEYS:
            comp = gr.Image(
                label=VIEW_LABELS[key],
                type="numpy",
                interactive=False,
                height=260,
            )
            image_components[key] = comp

    with gr.Row():
        prev_button = gr.Button("⬅️ Previous match")
        next_button = gr.Button("Next match ➡️")
        match_summary = gr.Markdown("Run the search to inspect matches.")

    match_state = gr.State()
    match_index = gr.State(0)

    ordered_components = [image_components[key] for key in VIEW_KEYS]
    all_outputs = [
        annotated_plot,
        *ordered_components,
        report_output,
        match_summary,
        match_state,
        match_index,
    ]

    search_button.click(
        fn=run_search,
        inputs=[main_input, mask_input, match_percent_input, tolerance_input],
        outputs=all_outputs,
    )
    prev_button.click(
        fn=goto_previous_match,
        inputs=[match_state, match_index],
        outputs=all_outputs,
    )
    next_button.click(
        fn=goto_next_match,
        inputs=[match_state, match_index],
        outputs=all_outputs,
    )

if __name__ == "__main__":
    demo.launch(theme=app_theme)
