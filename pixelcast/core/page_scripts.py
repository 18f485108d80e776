# Copyright 2026 Firefly Software Solutions Inc
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
JavaScript evaluated inside the rendering surface.

The scripts are kept as module constants so the Python side stays readable
and the in-page contract is in one place:

- AUDIO_REGISTRY_INIT_SCRIPT: installed before any surface script runs. It
  defines ``window.pixelcastAudio.registerAudioSource(node)`` and queues nodes
  registered before the tap exists.
- AUDIO_TAP_SCRIPT: waits for the audio graph, builds the capture chain and
  streams interleaved s16le PCM to the exposed host function.
- SURFACE_RECORDER_SCRIPT: records the canvas with MediaRecorder and sends
  each WebM chunk to the video relay over a WebSocket.
"""

AUDIO_PUSH_BINDING = "pixelcastPushAudio"

AUDIO_REGISTRY_INIT_SCRIPT = """
(() => {
  if (window.pixelcastAudio) return;
  const pending = [];
  window.pixelcastAudio = {
    tap: null,
    registerAudioSource(node) {
      if (this.tap) return this.tap(node);
      pending.push(node);
      return false;
    },
    _drainPending(tap) {
      this.tap = tap;
      while (pending.length) tap(pending.shift());
    },
  };
})();
"""

AUDIO_TAP_SCRIPT = """
(opts) => new Promise((resolve) => {
  const started = Date.now();
  const poll = setInterval(() => {
    const ctx = window[opts.graphGlobal];
    if (!ctx) {
      if (Date.now() - started >= opts.timeoutMs) {
        clearInterval(poll);
        resolve({ enabled: false, reason: 'audio graph not found' });
      }
      return;
    }
    clearInterval(poll);
    try {
      const capture = ctx.createGain();
      capture.gain.value = 1.0;
      const processor = ctx.createScriptProcessor(opts.bufferSize, opts.channels, opts.channels);
      const tapped = new WeakSet();

      const tap = (node) => {
        if (!node || tapped.has(node)) return false;
        tapped.add(node);
        try {
          AudioNode.prototype.__pixelcastConnect
            ? AudioNode.prototype.__pixelcastConnect.call(node, capture)
            : node.connect(capture);
          return true;
        } catch (e) {
          console.warn('pixelcast: could not tap audio node', e);
          return false;
        }
      };

      if (opts.mode === 'intercept') {
        const destination = ctx.destination;
        const original = AudioNode.prototype.connect;
        AudioNode.prototype.__pixelcastConnect = original;
        AudioNode.prototype.connect = function (target, ...rest) {
          const result = original.call(this, target, ...rest);
          if (target === destination && this !== processor) tap(this);
          return result;
        };
      }

      capture.connect(processor);
      processor.connect(ctx.destination);

      processor.onaudioprocess = (event) => {
        const input = event.inputBuffer;
        const left = input.getChannelData(0);
        const right = input.numberOfChannels > 1 ? input.getChannelData(1) : left;
        const pcm = new Int16Array(left.length * 2);
        for (let i = 0; i < left.length; i++) {
          pcm[i * 2] = Math.max(-1, Math.min(1, left[i])) * 0x7FFF;
          pcm[i * 2 + 1] = Math.max(-1, Math.min(1, right[i])) * 0x7FFF;
        }
        const bytes = new Uint8Array(pcm.buffer);
        let binary = '';
        for (let i = 0; i < bytes.length; i += 0x8000) {
          binary += String.fromCharCode.apply(null, bytes.subarray(i, i + 0x8000));
        }
        const push = window[opts.binding];
        if (typeof push === 'function') push(btoa(binary));
      };

      if (window.pixelcastAudio) window.pixelcastAudio._drainPending(tap);
      resolve({ enabled: true, sampleRate: ctx.sampleRate });
    } catch (e) {
      resolve({ enabled: false, reason: String(e) });
    }
  }, 100);
})
"""

SURFACE_RECORDER_SCRIPT = """
(opts) => new Promise((resolve) => {
  const canvas = document.querySelector(opts.canvasSelector);
  if (!canvas) {
    resolve({ ok: false, reason: 'canvas not found' });
    return;
  }
  try {
    const stream = canvas.captureStream(opts.captureFps);
    let mimeType = 'video/webm;codecs=vp9';
    if (!MediaRecorder.isTypeSupported(mimeType)) {
      mimeType = 'video/webm;codecs=vp8';
      if (!MediaRecorder.isTypeSupported(mimeType)) {
        resolve({ ok: false, reason: 'no supported WebM codec' });
        return;
      }
    }
    const recorder = new MediaRecorder(stream, {
      mimeType: mimeType,
      videoBitsPerSecond: opts.bitrate,
    });
    const ws = new WebSocket(opts.relayUrl);
    ws.binaryType = 'arraybuffer';
    window.pixelcastRecorder = { recorder, ws };

    ws.onopen = () => {
      recorder.ondataavailable = (event) => {
        if (event.data.size > 0 && ws.readyState === WebSocket.OPEN) ws.send(event.data);
      };
      recorder.onerror = (event) => console.error('pixelcast: MediaRecorder error', event.error);
      recorder.start(opts.timesliceMs);
      resolve({ ok: true, mimeType: mimeType });
    };
    ws.onerror = () => resolve({ ok: false, reason: 'relay connection failed' });
    ws.onclose = () => {
      if (recorder.state !== 'inactive') recorder.stop();
    };
  } catch (e) {
    resolve({ ok: false, reason: String(e) });
  }
})
"""
